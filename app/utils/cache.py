"""
Read-through cache for quiz, attempt and result views

The cache is an optimization only: every lookup may miss, and every mutation
deletes the keys it affects before returning.
"""
import redis
import json
import logging
import threading
import time
from typing import Any, Dict, Iterable, Optional, Tuple
from uuid import UUID

logger = logging.getLogger(__name__)


class CacheBackend:
    """Storage primitive behind CacheService; values are JSON strings"""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str, ttl: int) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def delete_by_prefix(self, prefix: str) -> int:
        raise NotImplementedError


class RedisCacheBackend(CacheBackend):
    def __init__(self, url: str):
        self.client = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5
        )
        # Test connection
        self.client.ping()

    def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    def set(self, key: str, value: str, ttl: int) -> None:
        self.client.setex(key, ttl, value)

    def delete(self, key: str) -> None:
        self.client.delete(key)

    def delete_by_prefix(self, prefix: str) -> int:
        keys = list(self.client.scan_iter(match=f"{prefix}*", count=500))
        if keys:
            self.client.delete(*keys)
        return len(keys)


class MemoryCacheBackend(CacheBackend):
    """Process-local backend; entries expire lazily when read"""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[float, str]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: str, ttl: int) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + ttl, value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def delete_by_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def __len__(self) -> int:
        return len(self._entries)


class NullCacheBackend(CacheBackend):
    """Caching disabled: every read misses"""

    def get(self, key: str) -> Optional[str]:
        return None

    def set(self, key: str, value: str, ttl: int) -> None:
        return None

    def delete(self, key: str) -> None:
        return None

    def delete_by_prefix(self, prefix: str) -> int:
        return 0


class CacheService:
    """JSON cache with per-call TTLs, shared by the quiz, attempt and grading services"""

    def __init__(self, backend: CacheBackend):
        self.backend = backend

    @classmethod
    def from_settings(cls, settings) -> "CacheService":
        """Build the backend named by CACHE_BACKEND"""
        if settings.CACHE_BACKEND == "memory":
            return cls(MemoryCacheBackend())
        if settings.CACHE_BACKEND == "none":
            return cls(NullCacheBackend())

        try:
            backend = RedisCacheBackend(settings.REDIS_URL)
            logger.info("Redis connection established")
            return cls(backend)
        except redis.RedisError as e:
            logger.warning(f"Redis connection failed: {str(e)}. Caching disabled.")
            return cls(NullCacheBackend())

    def get(self, key: str) -> Optional[Any]:
        """
        Get value from cache

        Args:
            key: Cache key

        Returns:
            Cached value or None
        """
        try:
            value = self.backend.get(key)
            if value is not None:
                logger.info(f"Cache hit: {key}")
                return json.loads(value)
            logger.info(f"Cache miss: {key}")
            return None
        except (redis.RedisError, ValueError) as e:
            logger.error(f"Cache get error: {str(e)}")
            return None

    def set(self, key: str, value: Any, ttl: int) -> bool:
        """
        Set value in cache

        Args:
            key: Cache key
            value: Value to cache (must be JSON serializable)
            ttl: Time to live in seconds

        Returns:
            Success status
        """
        if ttl <= 0:
            return False

        try:
            serialized = json.dumps(value)
            self.backend.set(key, serialized, ttl)
            logger.info(f"Cache set: {key} (TTL: {ttl}s)")
            return True
        except (redis.RedisError, TypeError) as e:
            logger.error(f"Cache set error: {str(e)}")
            return False

    def delete(self, key: str) -> bool:
        """Delete key from cache"""
        try:
            self.backend.delete(key)
            logger.info(f"Cache delete: {key}")
            return True
        except redis.RedisError as e:
            logger.error(f"Cache delete error: {str(e)}")
            return False

    def delete_by_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix"""
        try:
            removed = self.backend.delete_by_prefix(prefix)
            if removed:
                logger.info(f"Cleared {removed} cache entries under {prefix}")
            return removed
        except redis.RedisError as e:
            logger.error(f"Cache clear error: {str(e)}")
            return 0

    def invalidate(self, keys: Iterable[str] = (), prefixes: Iterable[str] = ()) -> None:
        """Drop a set of exact keys and key prefixes in one call"""
        for key in keys:
            self.delete(key)
        for prefix in prefixes:
            self.delete_by_prefix(prefix)


class CacheKeys:
    """Cache key builders; prefixes end with ':' so one scope never matches another"""

    @staticmethod
    def quiz(quiz_id: UUID, role: str) -> str:
        return f"quiz:single:{quiz_id}:{role}"

    @staticmethod
    def quiz_prefix(quiz_id: UUID) -> str:
        return f"quiz:single:{quiz_id}:"

    @staticmethod
    def class_quizzes(class_id: UUID, role: str, user_id: UUID) -> str:
        return f"quiz:class:{class_id}:{role}:{user_id}"

    @staticmethod
    def class_quizzes_prefix(class_id: UUID) -> str:
        return f"quiz:class:{class_id}:"

    @staticmethod
    def school_quizzes(school_id: UUID) -> str:
        return f"quiz:school:{school_id}"

    @staticmethod
    def quiz_results(quiz_id: UUID) -> str:
        return f"quiz:results:{quiz_id}"

    @staticmethod
    def result(result_id: UUID) -> str:
        return f"quiz:result:{result_id}"

    @staticmethod
    def student_results(student_id: UUID) -> str:
        return f"student:results:{student_id}"

    @staticmethod
    def student_progress(school_id: UUID, student_id: UUID) -> str:
        return f"student:progress:{school_id}:{student_id}"

    @staticmethod
    def subject_averages(school_id: UUID) -> str:
        return f"school:subject-averages:{school_id}"

    @staticmethod
    def teacher_results(school_id: UUID, user_id: UUID) -> str:
        return f"teacher:results:{school_id}:{user_id}"

    @staticmethod
    def teacher_results_prefix(school_id: UUID) -> str:
        return f"teacher:results:{school_id}:"

    @staticmethod
    def completion(quiz_id: UUID, student_id: UUID) -> str:
        return f"quiz:completion:{quiz_id}:{student_id}"

    @staticmethod
    def in_progress(quiz_id: UUID, student_id: UUID) -> str:
        return f"quiz:inprogress:{quiz_id}:{student_id}"

    @staticmethod
    def resume(quiz_id: UUID, student_id: UUID) -> str:
        return f"quiz:resume:{quiz_id}:{student_id}"

    @classmethod
    def attempt_scope(cls, quiz_id: UUID, student_id: UUID) -> list:
        """Keys describing one student's attempt state on one quiz"""
        return [
            cls.completion(quiz_id, student_id),
            cls.in_progress(quiz_id, student_id),
            cls.resume(quiz_id, student_id),
        ]
