from daraja_gateway.providers.callbacks import map_result_code, parse_callback
from daraja_gateway.providers.daraja_client import DarajaClient, STK_QUERY_PROCESSING

__all__ = ['DarajaClient', 'STK_QUERY_PROCESSING', 'map_result_code', 'parse_callback']
