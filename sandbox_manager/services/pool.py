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
Queues of pre-warmed, unassigned sandbox containers.

Two interchangeable variants exist: a process-local FIFO and a redis list
shared by every manager instance pointed at the same key.
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from threading import Lock
from typing import Deque, Optional

import redis

from sandbox_manager.api.schema import ContainerModel
from sandbox_manager.services.shared_store import shared_store_operation

logger = logging.getLogger(__name__)


class ContainerQueue(ABC):
    """FIFO of containers waiting to be handed out."""

    @abstractmethod
    def enqueue(self, container: ContainerModel) -> None:
        pass

    @abstractmethod
    def dequeue(self) -> Optional[ContainerModel]:
        """Pop the oldest container, or return None when the queue is empty."""

    @abstractmethod
    def size(self) -> int:
        pass

    def is_empty(self) -> bool:
        return self.size() == 0

    @abstractmethod
    def clear(self) -> None:
        pass


class InMemoryContainerQueue(ContainerQueue):
    def __init__(self):
        self._lock = Lock()
        self._items: Deque[ContainerModel] = deque()

    def enqueue(self, container: ContainerModel) -> None:
        with self._lock:
            self._items.append(container)

    def dequeue(self) -> Optional[ContainerModel]:
        with self._lock:
            if not self._items:
                return None
            return self._items.popleft()

    def size(self) -> int:
        with self._lock:
            return len(self._items)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


class RedisContainerQueue(ContainerQueue):
    """Redis list backed queue; RPUSH to enqueue, LPOP to dequeue."""

    def __init__(self, client: redis.Redis, key: str):
        self.client = client
        self.key = key

    def enqueue(self, container: ContainerModel) -> None:
        with shared_store_operation("pool enqueue"):
            self.client.rpush(self.key, container.to_json())

    def dequeue(self) -> Optional[ContainerModel]:
        with shared_store_operation("pool dequeue"):
            raw = self.client.lpop(self.key)
        if raw is None:
            return None
        return ContainerModel.from_json(raw)

    def size(self) -> int:
        with shared_store_operation("pool size"):
            return int(self.client.llen(self.key))

    def clear(self) -> None:
        with shared_store_operation("pool clear"):
            self.client.delete(self.key)
