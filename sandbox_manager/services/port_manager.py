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

"""Host port bookkeeping for backends that publish container ports."""

import logging
import socket
from threading import Lock
from typing import Dict, Iterable, List, Optional, Set

logger = logging.getLogger(__name__)

_PROBE_HOSTS = ("0.0.0.0", "127.0.0.1")


class PortManager:
    """
    Hands out free host ports from a fixed range and remembers which
    container owns them, so a teardown can release them in one call.
    """

    def __init__(self, start_port: int = 49152, end_port: int = 59152):
        if start_port > end_port:
            raise ValueError("start_port must not exceed end_port")
        self.start_port = start_port
        self.end_port = end_port
        self._lock = Lock()
        self._allocated: Set[int] = set()
        self._container_ports: Dict[str, List[int]] = {}

    @staticmethod
    def is_port_available(port: int) -> bool:
        for host in _PROBE_HOSTS:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                try:
                    sock.bind((host, port))
                except OSError:
                    return False
        return True

    def _allocate_locked(self) -> Optional[int]:
        for port in range(self.start_port, self.end_port + 1):
            if port in self._allocated:
                continue
            if self.is_port_available(port):
                self._allocated.add(port)
                return port
        return None

    def allocate_port(self) -> Optional[int]:
        """Reserve one free port, or return None when the range is exhausted."""
        with self._lock:
            port = self._allocate_locked()
        if port is None:
            logger.warning("No free port left in range %s-%s", self.start_port, self.end_port)
        return port

    def allocate_ports(self, count: int) -> Optional[List[int]]:
        """Reserve ``count`` distinct ports; on partial failure nothing stays reserved."""
        ports: List[int] = []
        with self._lock:
            for _ in range(count):
                port = self._allocate_locked()
                if port is None:
                    self._allocated.difference_update(ports)
                    logger.warning(
                        "Unable to allocate %s ports in range %s-%s",
                        count,
                        self.start_port,
                        self.end_port,
                    )
                    return None
                ports.append(port)
        return ports

    def register_container_ports(self, container_name: str, ports: Iterable[int]) -> None:
        with self._lock:
            owned = self._container_ports.setdefault(container_name, [])
            for port in ports:
                self._allocated.add(port)
                if port not in owned:
                    owned.append(port)

    def get_container_ports(self, container_name: str) -> List[int]:
        with self._lock:
            return list(self._container_ports.get(container_name, []))

    def release_port(self, port: int) -> None:
        with self._lock:
            self._allocated.discard(port)
            for owned in self._container_ports.values():
                if port in owned:
                    owned.remove(port)

    def release_ports(self, ports: Iterable[int]) -> None:
        with self._lock:
            self._allocated.difference_update(ports)

    def release_container_ports(self, container_name: str) -> List[int]:
        """Release every port registered for ``container_name``; unknown names are a no-op."""
        with self._lock:
            ports = self._container_ports.pop(container_name, [])
            self._allocated.difference_update(ports)
        if ports:
            logger.debug("Released ports %s of container %s", ports, container_name)
        return ports

    def allocated_ports(self) -> Set[int]:
        with self._lock:
            return set(self._allocated)

    def clear(self) -> None:
        with self._lock:
            self._allocated.clear()
            self._container_ports.clear()
