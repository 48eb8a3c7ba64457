from typing import Any, Optional

import backoff
from azure.cosmos import CosmosClient, exceptions

from campaignflow.shared.settings import HandoffSettings


MAX_RETRIES = 3
OPERATION_TIMEOUT = 10.0  # seconds


class RetryableCosmosError(Exception):
    """Indicates a Cosmos DB operation that should be retried"""


def get_cosmos_container(settings: HandoffSettings) -> Optional[Any]:
    """Return the handoff metrics container client or None if configuration is missing."""
    if not settings.cosmos_configured:
        return None
    client = CosmosClient.from_connection_string(settings.cosmos_connection_string, retry_total=MAX_RETRIES)
    db = client.get_database_client(settings.cosmos_db_name)
    return db.get_container_client(settings.cosmos_metrics_container)


def raise_if_retryable(exc: "exceptions.CosmosHttpResponseError") -> None:
    # Too Many Requests or Service Unavailable
    if exc.status_code in (429, 503):
        raise RetryableCosmosError(f"Retryable Cosmos error: {exc}") from exc


retry_on_throttle = backoff.on_exception(
    backoff.expo,
    RetryableCosmosError,
    max_tries=MAX_RETRIES,
    max_time=OPERATION_TIMEOUT,
)
