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

"""Folder level persistence of sandbox working directories."""

import logging
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)


class StorageManager:
    """
    Copies a session's mount directory to and from a storage location.

    Paths are local folders (a shared volume or a synced bucket mount). Both
    operations are best-effort: failures are logged and reported as False.
    """

    def download_folder(self, remote_path: str, local_path: str) -> bool:
        source = Path(remote_path)
        if not source.is_dir():
            logger.info("Storage path %s does not exist yet; nothing to restore.", remote_path)
            return False
        try:
            shutil.copytree(source, local_path, dirs_exist_ok=True)
        except OSError as exc:
            logger.warning("Failed to restore %s into %s: %s", remote_path, local_path, exc)
            return False
        return True

    def upload_folder(self, local_path: str, remote_path: str) -> bool:
        source = Path(local_path)
        if not source.is_dir():
            logger.warning("Mount directory %s missing; skipping upload.", local_path)
            return False
        try:
            Path(remote_path).parent.mkdir(parents=True, exist_ok=True)
            shutil.copytree(source, remote_path, dirs_exist_ok=True)
        except OSError as exc:
            logger.warning("Failed to persist %s to %s: %s", local_path, remote_path, exc)
            return False
        return True
