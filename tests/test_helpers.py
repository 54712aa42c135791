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

import pytest

from sandbox_manager.services.helpers import (
    generate_random_string,
    parse_memory_limit,
    parse_nano_cpus,
    sanitize_k8s_name,
)


@pytest.mark.parametrize(
    "quantity, expected",
    [
        ("256Mi", 256 * 1024 ** 2),
        ("4G", 4_000_000_000),
        ("1.5gi", int(1.5 * 1024 ** 3)),
        ("64mb", 64 * 1024 ** 2),
        ("2048", 2048),
        ("lots", None),
        ("10Qi", None),
        (None, None),
    ],
)
def test_memory_limit_to_bytes(quantity, expected):
    assert parse_memory_limit(quantity) == expected


@pytest.mark.parametrize(
    "quantity, expected",
    [("250m", 250_000_000), ("0.5", 500_000_000), ("4", 4_000_000_000), ("many", None), ("", None)],
)
def test_cpu_quantity_to_nano_cpus(quantity, expected):
    assert parse_nano_cpus(quantity) == expected


def test_generate_random_string_is_alphanumeric():
    value = generate_random_string(22)

    assert len(value) == 22
    assert value.isalnum()
    assert generate_random_string(22) != value


def test_sanitize_k8s_name():
    assert sanitize_k8s_name("runtime_sandbox_container_AbC") == "runtime-sandbox-container-abc"
    assert len(sanitize_k8s_name("x" * 100)) == 63
    assert sanitize_k8s_name("___") == "sandbox"
