import json
import threading
import pytest
from datetime import datetime, timedelta
from pathlib import Path

from mediaroulette.library import LibraryService, select_media_files, walk_directory
from mediaroulette.logging_config import DirectoryUnavailableError, NotFoundError, PersistenceError
from mediaroulette.models import UNCATEGORIZED_ID, Item, MediaType


class TestWalkDirectory:
    """Tests for the default directory enumerator."""

    def test_walk_returns_absolute_paths(self, temp_media_dir):
        """Test that every file is listed with an absolute path."""
        paths = walk_directory(str(temp_media_dir))

        assert all(Path(p).is_absolute() for p in paths)
        assert any(p.endswith("nested.mov") for p in paths)

    def test_walk_missing_directory(self):
        """Test walking a nonexistent directory."""
        with pytest.raises(DirectoryUnavailableError):
            walk_directory("/nonexistent/path")

    def test_select_media_files_filters_extensions(self):
        """Test that non-media files are filtered out."""
        paths = ["/m/a.MP4", "/m/b.txt", "/m/c.jpg", "/m/d"]

        assert select_media_files(paths) == ["/m/a.MP4", "/m/c.jpg"]


class TestImportFolder:
    """Tests for LibraryService.import_folder()."""

    def test_import_creates_source_and_items(self, temp_media_dir):
        """Test importing a folder creates one source and its media items."""
        library = LibraryService()

        count = library.import_folder(str(temp_media_dir))

        assert count == 4
        sources = library.get_sources()
        assert len(sources) == 1
        assert sources[0].name == "media"
        names = sorted(i.file_name for i in library.get_items_by_source())
        assert names == ["clip1.mp4", "clip2.mkv", "nested.mov", "photo1.jpg"]

    def test_import_sets_media_type_and_relative_path(self, temp_media_dir):
        """Test path fields and media type of imported items."""
        library = LibraryService()
        library.import_folder(str(temp_media_dir))

        photo = library.find_item_by_path(str(temp_media_dir / "photo1.jpg"))
        nested = library.find_item_by_path(str(temp_media_dir / "subdir" / "nested.mov"))

        assert photo.media_type == MediaType.PHOTO
        assert nested.media_type == MediaType.VIDEO
        assert nested.relative_path == str(Path("subdir") / "nested.mov")

    def test_reimport_preserves_metadata(self, temp_media_dir):
        """Test re-importing yields no new items and keeps item metadata."""
        library = LibraryService()
        library.import_folder(str(temp_media_dir))
        path = str(temp_media_dir / "clip1.mp4")
        library.set_favorite(path, True)
        library.set_blacklisted(path, True)
        library.record_playback(path)
        item = library.find_item_by_path(path)
        item.duration = 42.0
        library.update_item(item)

        count = library.import_folder(str(temp_media_dir))

        assert count == 0
        assert len(library) == 4
        assert len(library.get_sources()) == 1
        item = library.find_item_by_path(path)
        assert item.is_favorite is True
        assert item.is_blacklisted is True
        assert item.play_count == 1
        assert item.duration == 42.0

    def test_import_root_matches_case_insensitively(self, temp_media_dir):
        """Test a root differing only by case reuses the existing source."""
        library = LibraryService(enumerator=lambda root: walk_directory(str(temp_media_dir)))
        library.import_folder(str(temp_media_dir))
        source = library.get_sources()[0]
        source.root_path = source.root_path.upper()
        library.update_source(source)

        library.import_folder(str(temp_media_dir), display_name="Renamed")

        sources = library.get_sources()
        assert len(sources) == 1
        assert sources[0].name == "Renamed"

    def test_import_missing_directory(self):
        """Test importing a nonexistent folder."""
        library = LibraryService()

        with pytest.raises(DirectoryUnavailableError):
            library.import_folder("/nonexistent/path")

    def test_import_uses_enumerator(self, temp_media_dir):
        """Test that a supplied enumerator decides which files exist."""
        listed = [str(temp_media_dir / "clip1.mp4"), str(temp_media_dir / "notes.txt")]
        library = LibraryService(enumerator=lambda root: listed)

        assert library.import_folder(str(temp_media_dir)) == 1


class TestRefreshSource:
    """Tests for LibraryService.refresh_source()."""

    def test_refresh_added_and_removed(self, temp_media_dir):
        """Test one deleted and one added file reports added=1, removed=1."""
        library = LibraryService()
        library.import_folder(str(temp_media_dir))
        source_id = library.get_sources()[0].id
        before = len(library)

        (temp_media_dir / "clip1.mp4").unlink()
        (temp_media_dir / "fresh.avi").touch()

        result = library.refresh_source(source_id)

        assert (result.added, result.removed, result.updated) == (1, 1, 0)
        assert len(library) == before
        assert library.find_item_by_path(str(temp_media_dir / "clip1.mp4")) is None
        assert library.find_item_by_path(str(temp_media_dir / "fresh.avi")) is not None

    def test_refresh_updates_case_changed_path(self, temp_media_dir):
        """Test that a path differing only by case updates the item in place."""
        listing = [str(temp_media_dir / "clip1.mp4")]
        library = LibraryService(enumerator=lambda root: listing)
        library.import_folder(str(temp_media_dir))
        library.set_favorite(listing[0], True)
        source_id = library.get_sources()[0].id

        listing[0] = str(temp_media_dir / "CLIP1.mp4")
        result = library.refresh_source(source_id)

        assert (result.added, result.removed, result.updated) == (0, 0, 1)
        item = library.get_items_by_source(source_id)[0]
        assert item.file_name == "CLIP1.mp4"
        assert item.is_favorite is True

    def test_refresh_unknown_source(self):
        """Test refreshing an unknown source id."""
        library = LibraryService()

        with pytest.raises(NotFoundError):
            library.refresh_source("missing")


class TestSourcesAndItems:
    """Tests for source and item mutations."""

    def test_remove_source_cascades(self, temp_media_dir, tmp_path):
        """Test removing a source removes all of its items."""
        other = tmp_path / "other"
        other.mkdir()
        (other / "x.mp4").touch()
        library = LibraryService()
        library.import_folder(str(temp_media_dir))
        library.import_folder(str(other))
        source_id = library.get_sources()[0].id

        removed = library.remove_source(source_id)

        assert removed == 4
        assert library.get_items_by_source(source_id) == []
        remaining_ids = {s.id for s in library.get_sources()}
        assert all(i.source_id in remaining_ids for i in library.get_items_by_source())

    def test_remove_unknown_source(self):
        """Test removing an unknown source."""
        with pytest.raises(NotFoundError):
            LibraryService().remove_source("missing")

    def test_remove_item(self, temp_media_dir):
        """Test removing a single item by path, ignoring case."""
        library = LibraryService()
        library.import_folder(str(temp_media_dir))
        path = str(temp_media_dir / "clip2.mkv")

        library.remove_item(path.upper())

        assert library.find_item_by_path(path) is None
        with pytest.raises(NotFoundError):
            library.remove_item(path)

    def test_update_item_requires_known_source(self):
        """Test that items must reference an existing source."""
        library = LibraryService()

        with pytest.raises(NotFoundError):
            library.update_item(Item(source_id="nope", full_path="/m/a.mp4"))

    def test_returned_items_are_copies(self, temp_media_dir):
        """Test that callers cannot mutate the index through returned items."""
        library = LibraryService()
        library.import_folder(str(temp_media_dir))
        path = str(temp_media_dir / "clip1.mp4")

        item = library.find_item_by_path(path)
        item.is_favorite = True
        item.tags.add("mine")

        stored = library.find_item_by_path(path)
        assert stored.is_favorite is False
        assert stored.tags == set()

    def test_record_playback(self, temp_media_dir):
        """Test that playback increments the count and stamps the time."""
        library = LibraryService()
        library.import_folder(str(temp_media_dir))
        path = str(temp_media_dir / "clip1.mp4")

        library.record_playback(path)
        item = library.record_playback(path)

        assert item.play_count == 2
        assert item.last_played_utc is not None

    def test_source_statistics(self, temp_media_dir):
        """Test aggregate numbers for a source."""
        library = LibraryService()
        library.import_folder(str(temp_media_dir))
        source_id = library.get_sources()[0].id
        for name, seconds in [("clip1.mp4", 3600.0), ("clip2.mkv", 1800.0)]:
            item = library.find_item_by_path(str(temp_media_dir / name))
            item.duration = seconds
            item.has_audio = True
            library.update_item(item)

        stats = library.get_source_statistics(source_id)

        assert stats.total_videos == 3
        assert stats.total_photos == 1
        assert stats.videos_with_audio == 2
        assert stats.total_duration == 5400.0
        assert stats.average_duration == 2700.0
        assert stats.total_duration_formatted == "1h 30m"


class TestTags:
    """Tests for tag management."""

    def setup_method(self):
        """Create a library with two tagged items."""
        self.source_dir = Path(__file__).parent
        listing = ["/media/a.mp4", "/media/b.mp4"]
        self.library = LibraryService(enumerator=lambda root: listing)
        self.library.import_folder(str(self.source_dir))
        self.library.set_item_tags("/media/a.mp4", ["Funny", "Cats"])
        self.library.set_item_tags("/media/b.mp4", ["cats"])

    def test_set_item_tags_registers_tags(self):
        """Test that unknown tags become available tags."""
        assert sorted(self.library.get_available_tags(), key=str.lower) == ["Cats", "Funny"]

    def test_add_existing_tag_ignores_case(self):
        """Test adding a tag that exists with different case."""
        assert self.library.add_tag("FUNNY") is False
        assert self.library.add_tag("Dogs") is True

    def test_rename_tag_cascades(self):
        """Test renaming a tag updates every item carrying it."""
        touched = self.library.rename_tag("cats", "Kittens")

        assert touched == 2
        assert self.library.find_item_by_path("/media/b.mp4").tags == {"Kittens"}
        assert "Kittens" in self.library.get_available_tags()

    def test_remove_tag_cascades(self):
        """Test removing a tag strips it from items."""
        self.library.remove_tag("Cats")

        assert self.library.find_item_by_path("/media/a.mp4").tags == {"Funny"}
        assert self.library.get_available_tags() == ["Funny"]

    def test_remove_unknown_tag(self):
        """Test removing a tag that does not exist."""
        with pytest.raises(NotFoundError):
            self.library.remove_tag("nope")


class TestTagCategories:
    """Tests for tag category management."""

    def setup_method(self):
        """Create a library with tags and one category."""
        listing = ["/media/a.mp4", "/media/b.mp4"]
        self.library = LibraryService(enumerator=lambda root: listing)
        self.library.import_folder(str(Path(__file__).parent))
        self.library.set_item_tags("/media/a.mp4", ["Cats", "Funny"])
        self.animals = self.library.add_category("Animals")

    def test_add_category_appends_in_order(self):
        """Test new categories sort after existing ones."""
        mood = self.library.add_category("Mood")

        assert mood.sort_order == self.animals.sort_order + 1
        assert [c.name for c in self.library.get_categories()] == ["Animals", "Mood"]

    def test_duplicate_category_name(self):
        """Test category names are unique ignoring case."""
        with pytest.raises(ValueError):
            self.library.add_category("animals")

    def test_set_tag_category(self):
        """Test a tag can be moved into and out of a category."""
        self.library.set_tag_category("cats", self.animals.id)
        assert self.library.get_tag_category("Cats") == self.animals.id

        self.library.set_tag_category("Cats", None)
        assert self.library.get_tag_category("Cats") == UNCATEGORIZED_ID

    def test_set_tag_category_unknown(self):
        """Test unknown tags and categories raise NotFoundError."""
        with pytest.raises(NotFoundError):
            self.library.set_tag_category("Nope", self.animals.id)
        with pytest.raises(NotFoundError):
            self.library.set_tag_category("Cats", "missing-id")

    def test_rename_tag_keeps_category(self):
        """Test a renamed tag stays in its category."""
        self.library.set_tag_category("Cats", self.animals.id)

        self.library.rename_tag("Cats", "Kittens")

        assert self.library.get_tag_category("Kittens") == self.animals.id
        assert self.library.get_tag_category("Cats") == UNCATEGORIZED_ID

    def test_remove_category_uncategorizes_tags(self):
        """Test deleting a category leaves its tags without one."""
        self.library.add_tag("Dogs", self.animals.id)
        self.library.set_tag_category("Cats", self.animals.id)

        assert self.library.remove_category(self.animals.id) == 2
        assert self.library.get_categories() == []
        assert self.library.get_tag_category("Dogs") == UNCATEGORIZED_ID
        assert "Dogs" in self.library.get_available_tags()

    def test_categories_persist(self, temp_data_dir):
        """Test categories and tag links survive a save and load."""
        self.library.library_path = temp_data_dir / "library.json"
        self.library.set_tag_category("Cats", self.animals.id)
        self.library.save_library()

        document = json.loads((temp_data_dir / "library.json").read_text())
        loaded = LibraryService(temp_data_dir / "library.json")
        loaded.load_library()

        assert {"name": "Cats", "categoryId": self.animals.id} in document["tags"]
        assert [c.name for c in loaded.get_categories()] == ["Animals"]
        assert loaded.get_tag_category("cats") == self.animals.id
        assert loaded.get_tag_category("Funny") == UNCATEGORIZED_ID


class TestLibraryPersistence:
    """Tests for saving, loading and backups."""

    def test_save_and_load(self, temp_media_dir, temp_data_dir):
        """Test a saved library loads back with its metadata."""
        path = temp_data_dir / "library.json"
        library = LibraryService(path)
        library.import_folder(str(temp_media_dir))
        library.set_favorite(str(temp_media_dir / "clip1.mp4"), True)
        library.add_tag("Keep")
        library.save_library()

        loaded = LibraryService(path)
        assert loaded.load_library() is True

        assert len(loaded) == 4
        assert loaded.find_item_by_path(str(temp_media_dir / "clip1.mp4")).is_favorite is True
        assert loaded.get_available_tags() == ["Keep"]

    def test_save_leaves_no_temp_files(self, temp_media_dir, temp_data_dir):
        """Test the atomic save cleans up after itself."""
        library = LibraryService(temp_data_dir / "library.json")
        library.import_folder(str(temp_media_dir))

        library.save_library()

        assert [p.name for p in temp_data_dir.iterdir()] == ["library.json"]

    def test_load_corrupt_document(self, temp_data_dir):
        """Test a corrupt document loads as an empty library."""
        path = temp_data_dir / "library.json"
        path.write_text("{not json")

        library = LibraryService(path)

        assert library.load_library() is False
        assert len(library) == 0

    def test_load_drops_orphaned_items(self, temp_data_dir):
        """Test items referencing unknown sources are dropped on load."""
        path = temp_data_dir / "library.json"
        path.write_text(
            '{"sources": [{"id": "s1", "rootPath": "/m"}],'
            ' "items": [{"sourceId": "s1", "fullPath": "/m/a.mp4"},'
            ' {"sourceId": "gone", "fullPath": "/x/b.mp4"}]}'
        )

        library = LibraryService(path)
        library.load_library()

        assert [i.full_path for i in library.get_items_by_source()] == ["/m/a.mp4"]

    def test_slow_save_does_not_block_mutations(self, temp_media_dir, temp_data_dir, tmp_path, monkeypatch):
        """Test changes go through while a save is stuck writing to disk."""
        library = LibraryService(temp_data_dir / "library.json")
        library.import_folder(str(temp_media_dir))
        clip = str(temp_media_dir / "clip1.mp4")
        writing = threading.Event()
        release = threading.Event()
        written = []

        def slow_write(path, data):
            writing.set()
            release.wait(10)
            written.append(data)

        monkeypatch.setattr("mediaroulette.library.atomic_write_json", slow_write)
        (tmp_path / "more").mkdir()
        (tmp_path / "more" / "extra.mp4").touch()

        saver = threading.Thread(target=library.save_library)
        saver.start()
        try:
            assert writing.wait(5)

            library.set_favorite(clip, True)
            added = library.import_folder(str(tmp_path / "more"))

            assert saver.is_alive()
            assert added == 1
            assert library.find_item_by_path(clip).is_favorite is True
        finally:
            release.set()
            saver.join(5)

        assert len(written[0]["items"]) == 4
        assert len(library) == 5

    def test_save_without_path(self):
        """Test saving a library with no configured path."""
        with pytest.raises(PersistenceError):
            LibraryService().save_library()

    def test_backup_rotation(self, temp_media_dir, temp_data_dir):
        """Test backups rotate once the limit is reached."""
        library = LibraryService(temp_data_dir / "library.json")
        library.import_folder(str(temp_media_dir))
        library.save_library()
        backup_dir = temp_data_dir / "backups"
        start = datetime(2024, 1, 1, 12, 0, 0)

        for hours in range(3):
            library.create_backup_if_needed(True, 60, 2, now=start + timedelta(hours=hours))

        names = sorted(p.name for p in backup_dir.iterdir())
        assert names == [
            "library.json.backup.2024-01-01_13-00-00",
            "library.json.backup.2024-01-01_14-00-00",
        ]

    def test_backup_replaces_recent(self, temp_media_dir, temp_data_dir):
        """Test the newest backup is replaced when it is younger than the gap."""
        library = LibraryService(temp_data_dir / "library.json")
        library.import_folder(str(temp_media_dir))
        library.save_library()
        start = datetime(2024, 1, 1, 12, 0, 0)

        library.create_backup_if_needed(True, 60, 1, now=start)
        library.create_backup_if_needed(True, 60, 1, now=start + timedelta(minutes=5))

        names = [p.name for p in (temp_data_dir / "backups").iterdir()]
        assert names == ["library.json.backup.2024-01-01_12-05-00"]

    def test_backup_disabled(self, temp_media_dir, temp_data_dir):
        """Test nothing is written when backups are disabled."""
        library = LibraryService(temp_data_dir / "library.json")
        library.save_library()

        assert library.create_backup_if_needed(False, 60, 5) is None
        assert not (temp_data_dir / "backups").exists()
