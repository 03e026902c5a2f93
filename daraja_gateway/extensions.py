from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy

from daraja_gateway.extentions.celery_extention import create_celery

db = SQLAlchemy()
migrate = Migrate()
celery_app = create_celery()


class RedisClient:
    def __init__(self):
        self.client = None

    def init_app(self, app):
        import redis
        self.client = redis.Redis.from_url(app.config['REDIS_URL'])

    def get(self, key):
        return self.client.get(key)

    def set(self, key, value, ex=None, nx=False):
        return self.client.set(key, value, ex=ex, nx=nx)

    def delete(self, key):
        return self.client.delete(key)

    def exists(self, key):
        return self.client.exists(key)

    def ping(self):
        return self.client.ping()


redis_client = RedisClient()
