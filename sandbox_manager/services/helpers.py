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

"""Small parsing and naming helpers shared by the sandbox services."""

import re
import secrets
import string
from typing import Optional

_ALPHANUMERIC = string.ascii_letters + string.digits

_MEMORY_UNITS = {
    "": 1,
    "k": 1000,
    "m": 1000 ** 2,
    "g": 1000 ** 3,
    "t": 1000 ** 4,
    "ki": 1024,
    "mi": 1024 ** 2,
    "gi": 1024 ** 3,
    "ti": 1024 ** 4,
    # docker style suffixes
    "b": 1,
    "kb": 1024,
    "mb": 1024 ** 2,
    "gb": 1024 ** 3,
}
_MEMORY_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$")
_K8S_NAME_MAX_LENGTH = 63


def generate_random_string(length: int) -> str:
    """Return a random alphanumeric string of the given length."""
    return "".join(secrets.choice(_ALPHANUMERIC) for _ in range(length))


def parse_memory_limit(value: Optional[str]) -> Optional[int]:
    """
    Convert a memory quantity such as ``512Mi`` or ``1G`` to bytes.

    Returns None when the value is empty or cannot be parsed.
    """
    if not value:
        return None
    match = _MEMORY_PATTERN.match(str(value))
    if not match:
        return None
    number, unit = match.groups()
    multiplier = _MEMORY_UNITS.get(unit.lower())
    if multiplier is None:
        return None
    return int(float(number) * multiplier)


def parse_nano_cpus(value: Optional[str]) -> Optional[int]:
    """Convert a CPU quantity (``2``, ``0.5``, ``500m``) to Docker nano CPUs."""
    if not value:
        return None
    text = str(value).strip().lower()
    try:
        if text.endswith("m"):
            return int(float(text[:-1]) * 1_000_000)
        return int(float(text) * 1_000_000_000)
    except ValueError:
        return None


def sanitize_k8s_name(name: str) -> str:
    """Turn an arbitrary container name into a valid RFC 1123 label."""
    sanitized = re.sub(r"[^a-z0-9-]", "-", name.lower().replace("_", "-"))
    sanitized = sanitized[:_K8S_NAME_MAX_LENGTH].strip("-")
    return sanitized or "sandbox"
