import asyncio

import pytest

from config import ROOT_DIRECTORY_ID
from filesystem.service import validate_folder_name

from conftest import STORAGE_ID, file_record


class TestListFiles:
    def test_maps_bridge_records(self, transport, filesystem, device):
        transport.listings[(STORAGE_ID, ROOT_DIRECTORY_ID)] = [
            file_record(1, "DCIM", is_folder=True, size=4096),
            file_record(2, "song.mp3", size=2048, mod_time=1700000000),
        ]

        entries = asyncio.run(filesystem.list_files(device, STORAGE_ID))

        folder, song = entries
        assert folder.is_directory and folder.file_type == "folder" and folder.size == 0
        assert folder.formatted_size == "--"
        assert song.file_type == "MP3"
        assert song.extension == "mp3"
        assert song.formatted_size == "2.0 KB"
        assert song.modified is not None and song.modified.year == 2023
        assert folder.modified is None

    def test_skips_records_without_a_name(self, transport, filesystem, device):
        transport.listings[(STORAGE_ID, ROOT_DIRECTORY_ID)] = [
            file_record(1, ""),
            file_record(2, "a.txt", size=1),
        ]
        entries = asyncio.run(filesystem.list_files(device, STORAGE_ID))
        assert [e.name for e in entries] == ["a.txt"]

    def test_second_listing_comes_from_cache(self, transport, filesystem, device):
        transport.listings[(STORAGE_ID, ROOT_DIRECTORY_ID)] = [file_record(2, "a.txt")]

        async def _exercise():
            first = await filesystem.list_files(device, STORAGE_ID)
            second = await filesystem.list_files(device, STORAGE_ID)
            return first, second

        first, second = asyncio.run(_exercise())
        assert first == second
        assert transport.list_calls == [(STORAGE_ID, ROOT_DIRECTORY_ID)]

    def test_missing_payload_is_empty_and_not_cached(self, transport, filesystem, device, monkeypatch):
        monkeypatch.setattr(transport, "list_files", lambda s, p: None)
        assert asyncio.run(filesystem.list_files(device, STORAGE_ID)) == []
        assert len(filesystem.cache) == 0

    def test_raising_bridge_lists_nothing(self, transport, filesystem, device, monkeypatch):
        def _boom(storage_id, parent_id):
            raise OSError("bridge crashed")

        monkeypatch.setattr(transport, "list_files", _boom)
        assert asyncio.run(filesystem.list_files(device, STORAGE_ID)) == []
        assert len(filesystem.cache) == 0

    def test_undecodable_payload_is_empty(self, transport, filesystem, device):
        transport.list_payload_override = "{not json"
        assert asyncio.run(filesystem.list_files(device, STORAGE_ID)) == []
        assert len(filesystem.cache) == 0

    def test_root_files_uses_first_storage(self, transport, filesystem, device):
        transport.listings[(STORAGE_ID, ROOT_DIRECTORY_ID)] = [file_record(2, "a.txt")]
        entries = asyncio.run(filesystem.root_files(device))
        assert [e.name for e in entries] == ["a.txt"]

    def test_children_of_a_folder(self, transport, filesystem, device):
        transport.listings[(STORAGE_ID, ROOT_DIRECTORY_ID)] = [file_record(1, "DCIM", is_folder=True)]
        transport.listings[(STORAGE_ID, 1)] = [file_record(9, "IMG_1.jpg", parent_id=1)]

        async def _exercise():
            (dcim,) = await filesystem.root_files(device)
            return await filesystem.children(device, dcim)

        assert [e.object_id for e in asyncio.run(_exercise())] == [9]


class TestFolders:
    def test_create_folder_invalidates_and_resolves_id(self, transport, filesystem, device):
        async def _exercise():
            await filesystem.list_files(device, STORAGE_ID)  # primes the cache
            folder_id = await filesystem.create_folder(device, STORAGE_ID, ROOT_DIRECTORY_ID, "Music")
            listing = await filesystem.list_files(device, STORAGE_ID)
            return folder_id, listing

        folder_id, listing = asyncio.run(_exercise())
        assert folder_id == 1001
        assert [e.name for e in listing] == ["Music"]

    def test_create_folder_falls_back_to_bridge_id(self, transport, filesystem, device):
        transport.folder_ids_visible = False
        folder_id = asyncio.run(
            filesystem.create_folder(device, STORAGE_ID, ROOT_DIRECTORY_ID, "Music")
        )
        assert folder_id == 1001

    def test_create_folder_failure_returns_zero(self, transport, filesystem, device):
        transport.failing_folders.add("Music")
        assert asyncio.run(
            filesystem.create_folder(device, STORAGE_ID, ROOT_DIRECTORY_ID, "Music")
        ) == 0

    def test_get_or_create_reuses_existing(self, transport, filesystem, device):
        transport.listings[(STORAGE_ID, ROOT_DIRECTORY_ID)] = [
            file_record(7, "Music", is_folder=True),
            file_record(8, "Notes", size=3),
        ]
        folder_id = asyncio.run(
            filesystem.get_or_create_folder(device, STORAGE_ID, ROOT_DIRECTORY_ID, "Music")
        )
        assert folder_id == 7
        assert transport.created_folders == []

    def test_a_file_does_not_count_as_folder(self, transport, filesystem, device):
        transport.listings[(STORAGE_ID, ROOT_DIRECTORY_ID)] = [file_record(8, "Notes", size=3)]
        folder_id = asyncio.run(
            filesystem.find_folder(device, STORAGE_ID, ROOT_DIRECTORY_ID, "Notes")
        )
        assert folder_id is None

    @pytest.mark.parametrize("name", ["", "   ", ".", "..", "a/b", "a\\b", "tab\there", "caf\udce9"])
    def test_invalid_names(self, filesystem, device, transport, name):
        with pytest.raises(ValueError):
            asyncio.run(filesystem.create_folder(device, STORAGE_ID, ROOT_DIRECTORY_ID, name))
        assert transport.created_folders == []

    def test_valid_name(self):
        validate_folder_name("Holiday 2024")
