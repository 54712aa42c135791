# Copyright 2025 Alibaba Group Holding Ltd.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Identity mapping from (user, session, sandbox type[, image]) to a live container.

Lookups that omit the image fall back to the single record stored for the same
user, session and type with any image; when several images are recorded the
lookup is ambiguous and misses. A lookup naming an image only matches exactly.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Lock
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote, unquote

import redis

from sandbox_manager.api.schema import ContainerModel, SandboxType
from sandbox_manager.services.shared_store import shared_store_operation

logger = logging.getLogger(__name__)

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def _segment(value: str) -> str:
    return quote(value, safe="")


@dataclass(frozen=True)
class SandboxKey:
    user_id: str
    session_id: str
    sandbox_type: SandboxType
    image_id: str = ""

    def __post_init__(self):
        object.__setattr__(self, "sandbox_type", SandboxType(self.sandbox_type))
        object.__setattr__(self, "image_id", self.image_id or "")

    def same_owner(self, other: "SandboxKey") -> bool:
        return (
            self.user_id == other.user_id
            and self.session_id == other.session_id
            and self.sandbox_type == other.sandbox_type
        )


Lookup = Tuple[SandboxKey, ContainerModel]


class SandboxMap(ABC):
    """Key-value store of assigned containers."""

    @abstractmethod
    def put(self, key: SandboxKey, container: ContainerModel) -> None:
        pass

    @abstractmethod
    def put_if_absent(self, key: SandboxKey, container: ContainerModel) -> ContainerModel:
        """Store ``container`` unless ``key`` is taken; return whichever record is stored."""

    @abstractmethod
    def get_exact(self, key: SandboxKey) -> Optional[ContainerModel]:
        pass

    @abstractmethod
    def find_any_image(self, key: SandboxKey) -> List[Lookup]:
        """Every record of the key's user, session and type, whatever its image."""

    @abstractmethod
    def remove(self, key: SandboxKey) -> bool:
        pass

    @abstractmethod
    def get_all(self) -> Dict[SandboxKey, ContainerModel]:
        pass

    def lookup(self, key: SandboxKey) -> Optional[Lookup]:
        """Resolve ``key`` to the stored key and container, applying the image fallback."""
        found = self.get_exact(key)
        if found is not None:
            return key, found
        if key.image_id:
            return None
        matches = self.find_any_image(key)
        if len(matches) == 1:
            return matches[0]
        if matches:
            logger.debug("Ambiguous lookup for %s: %s images recorded", key, len(matches))
        return None

    def get(self, key: SandboxKey) -> Optional[ContainerModel]:
        found = self.lookup(key)
        return found[1] if found else None


class InMemorySandboxMap(SandboxMap):
    def __init__(self):
        self._lock = Lock()
        self._items: Dict[SandboxKey, ContainerModel] = {}

    def put(self, key: SandboxKey, container: ContainerModel) -> None:
        with self._lock:
            self._items[key] = container

    def put_if_absent(self, key: SandboxKey, container: ContainerModel) -> ContainerModel:
        with self._lock:
            return self._items.setdefault(key, container)

    def get_exact(self, key: SandboxKey) -> Optional[ContainerModel]:
        with self._lock:
            return self._items.get(key)

    def find_any_image(self, key: SandboxKey) -> List[Lookup]:
        with self._lock:
            return [(k, v) for k, v in self._items.items() if k.same_owner(key)]

    def remove(self, key: SandboxKey) -> bool:
        with self._lock:
            return self._items.pop(key, None) is not None

    def get_all(self) -> Dict[SandboxKey, ContainerModel]:
        with self._lock:
            return dict(self._items)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


class RedisSandboxMap(SandboxMap):
    """
    Redis backed map. Each record is a JSON string stored under
    ``<prefix>:<user>:<session>:<type>[:<image>]``. Each id segment is
    percent-encoded so ids containing ``:`` stay intact.
    """

    def __init__(self, client: redis.Redis, prefix: str):
        self.client = client
        self.prefix = prefix

    def _owner_key(self, key: SandboxKey) -> str:
        return f"{self.prefix}:{_segment(key.user_id)}:{_segment(key.session_id)}:{key.sandbox_type.value}"

    def _redis_key(self, key: SandboxKey) -> str:
        owner = self._owner_key(key)
        return f"{owner}:{_segment(key.image_id)}" if key.image_id else owner

    def _parse_key(self, raw: str) -> Optional[SandboxKey]:
        body = raw[len(self.prefix) + 1:]
        parts = body.split(":", 3)
        if len(parts) < 3:
            return None
        try:
            return SandboxKey(
                user_id=unquote(parts[0]),
                session_id=unquote(parts[1]),
                sandbox_type=SandboxType(parts[2]),
                image_id=unquote(parts[3]) if len(parts) == 4 else "",
            )
        except ValueError:
            logger.warning("Ignoring unparseable mapping key %s", raw)
            return None

    def _load(self, pattern: str) -> List[Lookup]:
        with shared_store_operation("mapping scan"):
            keys = list(self.client.scan_iter(match=pattern))
            if not keys:
                return []
            values = self.client.mget(keys)
        results: List[Lookup] = []
        for raw_key, raw_value in zip(keys, values):
            if raw_value is None:
                continue
            key = self._parse_key(raw_key)
            if key is not None:
                results.append((key, ContainerModel.from_json(raw_value)))
        return results

    def put(self, key: SandboxKey, container: ContainerModel) -> None:
        with shared_store_operation("mapping put"):
            self.client.set(self._redis_key(key), container.to_json())

    def put_if_absent(self, key: SandboxKey, container: ContainerModel) -> ContainerModel:
        redis_key = self._redis_key(key)
        with shared_store_operation("mapping put_if_absent"):
            if self.client.set(redis_key, container.to_json(), nx=True):
                return container
            raw = self.client.get(redis_key)
        if raw is None:
            # Removed between the two calls; claim it again.
            return self.put_if_absent(key, container)
        return ContainerModel.from_json(raw)

    def get_exact(self, key: SandboxKey) -> Optional[ContainerModel]:
        with shared_store_operation("mapping get"):
            raw = self.client.get(self._redis_key(key))
        return ContainerModel.from_json(raw) if raw is not None else None

    def find_any_image(self, key: SandboxKey) -> List[Lookup]:
        owner = _GLOB_SPECIAL.sub(r"\\\1", self._owner_key(key))
        return [item for item in self._load(f"{owner}:*") if item[0].same_owner(key)]

    def remove(self, key: SandboxKey) -> bool:
        with shared_store_operation("mapping remove"):
            return bool(self.client.delete(self._redis_key(key)))

    def get_all(self) -> Dict[SandboxKey, ContainerModel]:
        prefix = _GLOB_SPECIAL.sub(r"\\\1", self.prefix)
        return dict(self._load(f"{prefix}:*"))


class SandboxMapping:
    """
    Local cache in front of an optional shared store.

    The shared store is written first and wins on merge; a shared hit warms
    the local cache.
    """

    def __init__(self, local: Optional[InMemorySandboxMap] = None, shared: Optional[RedisSandboxMap] = None):
        self.local = local or InMemorySandboxMap()
        self.shared = shared

    def lookup(self, key: SandboxKey) -> Optional[Lookup]:
        found = self.local.lookup(key)
        if found is not None:
            return found
        if self.shared is None:
            return None
        found = self.shared.lookup(key)
        if found is not None:
            self.local.put(*found)
        return found

    def get(self, key: SandboxKey) -> Optional[ContainerModel]:
        found = self.lookup(key)
        return found[1] if found else None

    def put(self, key: SandboxKey, container: ContainerModel) -> None:
        if self.shared is not None:
            self.shared.put(key, container)
        self.local.put(key, container)

    def put_if_absent(self, key: SandboxKey, container: ContainerModel) -> ContainerModel:
        if self.shared is None:
            return self.local.put_if_absent(key, container)
        winner = self.shared.put_if_absent(key, container)
        self.local.put(key, winner)
        return winner

    def remove(self, key: SandboxKey) -> bool:
        removed = False
        try:
            if self.shared is not None:
                removed = self.shared.remove(key)
        finally:
            removed = self.local.remove(key) or removed
        return removed

    def get_all(self) -> Dict[SandboxKey, ContainerModel]:
        merged = self.local.get_all()
        if self.shared is not None:
            merged.update(self.shared.get_all())
        return merged
