import json
import logging

import redis
from fastapi import Request

logger = logging.getLogger(__name__)


class OrderEventPublisher:
    """Publish order updates to Redis for live kitchen/diner screens.

    Publishes to both:
    - orders:tenant:{tenant_id} - for restaurant staff (all tenant orders)
    - orders:table:{table_id} - for diners at that table, if the order has one
    """

    def __init__(self, client: redis.Redis | None):
        self.client = client

    @classmethod
    def from_url(cls, redis_url: str) -> "OrderEventPublisher":
        try:
            client = redis.from_url(redis_url)
            client.ping()
        except redis.RedisError as e:
            logger.warning(f"Redis unavailable at {redis_url}, order updates disabled: {e}")
            client = None
        return cls(client)

    def publish_order_update(
        self, tenant_id: str, order_data: dict, table_id: str | None = None
    ) -> None:
        if self.client is None:
            return
        message = json.dumps(order_data)
        try:
            self.client.publish(f"orders:tenant:{tenant_id}", message)
            if table_id is not None:
                self.client.publish(f"orders:table:{table_id}", message)
        except redis.RedisError as e:
            logger.warning(f"Failed to publish order update for tenant {tenant_id}: {e}")


def get_publisher(request: Request) -> OrderEventPublisher:
    return request.app.state.publisher
