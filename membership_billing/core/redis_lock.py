"""
Redis locking utilities.

Two flavours are provided:

- ``distributed_lock``: whole-job lock for the periodic passes so only one
  service instance runs a pass at a time. Fails open when Redis is down.
- ``subscription_lease``: per-subscription lease held while a renewal, a
  webhook confirmation or an admin cancellation mutates billing state. Fails
  closed: if the lease cannot be taken the caller gets ``ConcurrencyConflict``.
"""
import logging
from contextlib import contextmanager
from typing import Generator
import redis
import os

from .exceptions import ConcurrencyConflict

logger = logging.getLogger(__name__)

# Initialize Redis client
redis_client = None


def get_redis_client() -> redis.Redis:
    """
    Get or create Redis client instance.

    Returns:
        Redis client instance
    """
    global redis_client

    if redis_client is None:
        redis_url = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
        redis_client = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5
        )
        logger.info(f"Redis client initialized: {redis_url}")

    return redis_client


@contextmanager
def distributed_lock(
    lock_name: str,
    timeout: int = 3600,
    blocking: bool = False,
    blocking_timeout: int = 1
) -> Generator[bool, None, None]:
    """
    Acquire a distributed lock for scheduled jobs.

    Args:
        lock_name: Unique name for the lock (e.g., "run_auto_renewals")
        timeout: Lock expiration time in seconds (default: 3600 = 1 hour)
        blocking: Whether to wait for lock if already held (default: False)
        blocking_timeout: Max seconds to wait if blocking=True (default: 1)

    Yields:
        bool: True if lock was acquired, False if another instance holds it

    Example:
        >>> with distributed_lock("run_auto_renewals") as acquired:
        ...     if not acquired:
        ...         return
        ...     # Job logic here
    """
    full_lock_name = f"job_lock:{lock_name}"
    lock = None
    acquired = False

    try:
        client = get_redis_client()
        lock = client.lock(
            full_lock_name,
            timeout=timeout,
            blocking=blocking,
            blocking_timeout=blocking_timeout
        )
        acquired = lock.acquire(blocking=blocking, blocking_timeout=blocking_timeout)
    except redis.exceptions.RedisError as e:
        # Fail open - a Redis outage must not stop the batch passes;
        # per-subscription leases still guard every charge
        logger.error(f"Redis error acquiring lock '{lock_name}': {e}")
        yield True
        return

    if acquired:
        logger.info(f"Acquired distributed lock: {lock_name}")
    else:
        logger.info(f"Lock already held by another instance: {lock_name}")

    try:
        yield acquired
    finally:
        if acquired and lock is not None:
            try:
                lock.release()
                logger.debug(f"Released distributed lock: {lock_name}")
            except redis.exceptions.RedisError as e:
                logger.warning(f"Failed to release lock '{lock_name}': {e}")


@contextmanager
def subscription_lease(subscription_id: str, timeout: int = 300) -> Generator[None, None, None]:
    """
    Hold an exclusive lease on one subscription's billing state.

    Raises:
        ConcurrencyConflict: another worker holds the lease, or Redis is unreachable
    """
    lease_name = f"subscription_lease:{subscription_id}"

    try:
        client = get_redis_client()
        lease = client.lock(lease_name, timeout=timeout, blocking=False)
        acquired = lease.acquire(blocking=False)
    except redis.exceptions.RedisError as e:
        logger.error(f"Redis error acquiring lease for subscription {subscription_id}: {e}")
        raise ConcurrencyConflict(f"Could not lease subscription {subscription_id}: {e}") from e

    if not acquired:
        raise ConcurrencyConflict(f"Subscription {subscription_id} is being processed by another worker")

    try:
        yield
    finally:
        try:
            lease.release()
        except redis.exceptions.RedisError as e:
            # Lease expires on its own after `timeout`
            logger.warning(f"Failed to release lease for subscription {subscription_id}: {e}")


def check_redis_connection() -> bool:
    """
    Check if Redis connection is healthy.

    Returns:
        bool: True if Redis is reachable, False otherwise
    """
    try:
        client = get_redis_client()
        client.ping()
        return True
    except redis.exceptions.RedisError as e:
        logger.error(f"Redis connection failed: {e}")
        return False
