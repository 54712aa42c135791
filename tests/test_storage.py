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

from sandbox_manager.services.storage import StorageManager


class TestStorageManager:
    def test_download_copies_existing_folder(self, tmp_path):
        remote = tmp_path / "remote"
        remote.mkdir()
        (remote / "notes.txt").write_text("hello")
        local = tmp_path / "local"

        assert StorageManager().download_folder(str(remote), str(local)) is True
        assert (local / "notes.txt").read_text() == "hello"

    def test_download_missing_folder_is_not_an_error(self, tmp_path):
        assert StorageManager().download_folder(str(tmp_path / "absent"), str(tmp_path / "local")) is False

    def test_upload_merges_into_destination(self, tmp_path):
        local = tmp_path / "local"
        local.mkdir()
        (local / "out.txt").write_text("data")
        remote = tmp_path / "bucket" / "session"

        assert StorageManager().upload_folder(str(local), str(remote)) is True
        assert (remote / "out.txt").read_text() == "data"

    def test_upload_missing_mount_returns_false(self, tmp_path):
        assert StorageManager().upload_folder(str(tmp_path / "absent"), str(tmp_path / "remote")) is False
