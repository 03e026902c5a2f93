"""
Audit Service
Append-only audit trail for credential access and transaction lifecycle events
"""

import uuid
from typing import Dict, Any, Optional

from flask import has_request_context, request

from daraja_gateway.extensions import db
from daraja_gateway.models import AuditLog
from daraja_gateway.utils.logger import get_logger

logger = get_logger(__name__)


class AuditService:
    """Service for creating and reading audit logs"""

    @staticmethod
    def log_event(
            event_type: str,
            event_data: Dict[str, Any],
            merchant_id: Optional[uuid.UUID] = None,
            transaction_id: Optional[uuid.UUID] = None,
            actor: Optional[str] = None,
            commit: bool = True
    ) -> AuditLog:
        """
        Create an audit log entry

        Args:
            event_type: Type of event (e.g., 'credentials.revealed', 'transaction.success')
            event_data: Additional event data; must never contain secrets
            merchant_id: Merchant the event belongs to
            transaction_id: Transaction UUID if the event concerns one
            actor: Who triggered the event (service name, API caller)
            commit: Commit immediately; pass False to join the caller's unit of work

        Returns:
            Created AuditLog object
        """
        audit_log = AuditLog(
            merchant_id=merchant_id,
            transaction_id=transaction_id,
            event_type=event_type,
            event_data=event_data,
            actor=actor,
            ip_address=AuditService._get_client_ip()
        )

        db.session.add(audit_log)

        if commit:
            try:
                db.session.commit()
            except Exception as e:
                db.session.rollback()
                logger.error('Failed to create audit log: %s', e)
                raise

        return audit_log

    @staticmethod
    def get_trail(merchant_id: Optional[uuid.UUID] = None,
                  transaction_id: Optional[uuid.UUID] = None,
                  event_type: Optional[str] = None) -> list:
        """Audit entries ordered oldest first"""
        query = AuditLog.query

        if merchant_id:
            query = query.filter_by(merchant_id=merchant_id)

        if transaction_id:
            query = query.filter_by(transaction_id=transaction_id)

        if event_type:
            query = query.filter_by(event_type=event_type)

        return query.order_by(AuditLog.timestamp.asc()).all()

    @staticmethod
    def _get_client_ip() -> Optional[str]:
        """Client address as resolved by ProxyFix; forwarded headers are not trusted here"""
        if not has_request_context():
            return None
        return request.remote_addr
