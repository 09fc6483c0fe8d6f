from structlog import get_logger

log = get_logger()


def delete_with_retry(storage, key: str) -> bool:
    """Delete a blob, retrying once immediately. Returns False if both attempts fail.

    A blob left behind here is picked up by a later run's orphan pass, so there
    is no backoff and no queue.
    """
    try:
        storage.delete(key)
        return True
    except Exception as first:
        log.warning("blob_delete_retry", key=key, error=str(first))
    try:
        storage.delete(key)
        return True
    except Exception as e:
        log.error("blob_delete_failed", key=key, error_type=type(e).__name__, error=str(e))
        return False
