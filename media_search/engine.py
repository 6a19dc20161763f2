import logging
from typing import Dict, Iterable, Optional

from elastic_transport import ConnectionError as ESConnectionError
from elastic_transport import TransportError
from elasticsearch import ApiError, AsyncElasticsearch, BadRequestError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import config
from .indices import ENTITY_SPECS, INDEX_SETTINGS, EntitySpec
from .metrics import record_es_error, update_es_connection_status

logger = logging.getLogger(__name__)


def create_client(settings=config) -> AsyncElasticsearch:
    """Build the async client with per-request timeout and retry bounds"""
    return AsyncElasticsearch(**settings.get_elasticsearch_config())


def validate_index_name(index_name: str) -> None:
    # Elasticsearch index name rules:
    # - must be lowercase
    # - cannot start with '_', '-', '+'
    # - valid chars: a-z, 0-9, -, _, +
    # - cannot be '.' or '..'
    # - length 1-255
    if (
        not index_name
        or not (1 <= len(index_name) <= 255)
        or index_name in {".", ".."}
        or index_name[0] in "_-+"
        or not all(c.islower() or c.isdigit() or c in "-_+" for c in index_name)
    ):
        logger.error(f"Invalid Elasticsearch index name: '{index_name}'")
        raise ValueError(f"Invalid Elasticsearch index name: '{index_name}'")


@retry(
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=2, min=2, max=10),
    retry=retry_if_exception_type(ESConnectionError),
    reraise=True
)
async def ensure_index(es: AsyncElasticsearch, spec: EntitySpec) -> bool:
    """
    Create `spec.index` with its mapping and the shared analysis settings if it
    does not exist yet. Returns True when the index was created.
    Retries on connection errors.
    """
    validate_index_name(spec.index)
    try:
        exists = await es.indices.exists(index=spec.index)
    except BadRequestError as bre:
        logger.error(f"BadRequestError when checking index '{spec.index}': {bre}")
        raise

    if exists:
        logger.info(f"Elasticsearch index '{spec.index}' already exists; skipping mapping creation.")
        return False

    await es.indices.create(index=spec.index, settings=INDEX_SETTINGS, mappings=spec.mapping)
    logger.info(f"Created Elasticsearch index '{spec.index}'")
    return True


async def ensure_indices(es: AsyncElasticsearch, specs: Optional[Iterable[EntitySpec]] = None) -> Dict[str, bool]:
    """Ensure every known index exists; returns {index: created}"""
    created = {}
    for spec in specs if specs is not None else ENTITY_SPECS.values():
        created[spec.index] = await ensure_index(es, spec)
    return created


async def recreate_index(es: AsyncElasticsearch, spec: EntitySpec) -> None:
    """Drop and recreate an index with the current mapping (admin only)"""
    await es.indices.delete(index=spec.index, ignore_unavailable=True)
    await es.indices.create(index=spec.index, settings=INDEX_SETTINGS, mappings=spec.mapping)
    logger.info(f"Recreated Elasticsearch index '{spec.index}'")


async def health_check(es: AsyncElasticsearch) -> Optional[dict]:
    try:
        health = await es.cluster.health()
        update_es_connection_status(True)
        return {
            "status": health["status"],
            "numberOfNodes": health["number_of_nodes"],
            "activeShards": health["active_shards"],
        }
    except (ApiError, TransportError) as e:
        logger.error(f"Elasticsearch health check failed: {e}")
        record_es_error(type(e).__name__, "health")
        update_es_connection_status(False)
        return None


async def get_index_stats(es: AsyncElasticsearch) -> Dict[str, dict]:
    """Per-index document count and primary store size; unreadable indices report zeros"""
    stats = {}
    for spec in ENTITY_SPECS.values():
        try:
            index_stats = await es.indices.stats(index=spec.index)
            primaries = index_stats["_all"]["primaries"]
            stats[spec.index] = {
                "docs": primaries["docs"]["count"],
                "size": primaries["store"]["size_in_bytes"],
            }
        except (ApiError, TransportError) as e:
            logger.warning(f"Stats unavailable for index '{spec.index}': {e}")
            stats[spec.index] = {"docs": 0, "size": 0}
    return stats
