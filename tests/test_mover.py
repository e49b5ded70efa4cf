import threading
from unittest.mock import patch

import pytest

from debrid_namespace.mover import is_folder_key, job_key_of
from debrid_namespace.rule_file import line_key
from debrid_namespace.utils import (
    DebridError,
    DirectoryNotEmptyError,
    DirNotFoundError,
    ObjectNotFoundError,
    ReservedRootError,
)


def rule_lines(engine):
    return engine.rule_file.read_lines()


def governing(engine, key):
    return [line for line in rule_lines(engine) if line_key(line) == key]


def child_names(engine, path):
    return sorted(item.name for item in engine.tables.folders.children(path))


def test_key_helpers():
    assert job_key_of("/Film.2019/AAA") == "/Film.2019/"
    assert job_key_of("/Film.2019/") == "/Film.2019/"
    assert is_folder_key("/Film.2019/", "/movies/x/")
    assert is_folder_key("/archive", "/archive/")
    assert not is_folder_key("/Film.2019/AAA", "/movies/")


def test_move_file_records_one_line_and_patches_tables(engine):
    item = engine.tables.folders.find("/movies/Film.2019.1080p/", "film.2019.mkv")
    moved = engine.mover.move_file(item, "/movies/", "renamed.mkv")

    assert moved.name == "renamed.mkv"
    assert governing(engine, "/Film.2019.1080p/AAA") == ["/Film.2019.1080p/AAA -> /movies/renamed.mkv"]
    assert engine.tables.folders.find("/movies/", "renamed.mkv") is not None
    assert engine.tables.folders.find("/movies/Film.2019.1080p/", "film.2019.mkv") is None

    engine.ensure_fresh(force=True)
    assert engine.tables.folders.find("/movies/", "renamed.mkv") is not None


def test_move_back_and_forth_keeps_a_single_line(engine):
    item = engine.tables.folders.find("/movies/Film.2019.1080p/", "film.2019.mkv")
    item = engine.mover.move_file(item, "/movies/", "renamed.mkv")
    engine.mover.move_file(item, "/movies/Film.2019.1080p/", "film.2019.mkv")
    assert governing(engine, "/Film.2019.1080p/AAA") == [
        "/Film.2019.1080p/AAA -> /movies/Film.2019.1080p/film.2019.mkv"
    ]
    assert child_names(engine, "/movies/Film.2019.1080p/") == ["film.2019.mkv"]


def test_trash_hides_file_then_deletes_completed_job(engine, mock_client):
    first = engine.tables.folders.find("/shows/Show.S01.1080p/", "S1E1")
    second = engine.tables.folders.find("/shows/Show.S01.1080p/", "S1E2")

    assert engine.mover.remove(first) is False
    assert governing(engine, "/Show.S01.1080p/S1E1") == [
        "/Show.S01.1080p/S1E1 -> /shows/Show.S01.1080p/S1E1.trashed"
    ]
    assert child_names(engine, "/shows/Show.S01.1080p/") == ["S1E2"]
    assert mock_client.job("JOBSHOW") is not None

    assert engine.mover.remove(second) is True
    assert ("delete_torrent", "JOBSHOW") in mock_client.calls
    assert mock_client.job("JOBSHOW") is None
    assert not any("/Show.S01.1080p/" in line for line in rule_lines(engine))
    assert child_names(engine, "/shows/Show.S01.1080p/") == []
    assert engine.fetcher.is_stale()


def test_create_dir_appends_bare_leaf(engine):
    path = engine.mover.create_dir("/movies/", "collection")
    assert path == "/movies/collection/"
    assert rule_lines(engine)[-1] == "/movies/collection/"
    assert "collection" in child_names(engine, "/movies/")


def test_create_dir_in_root_is_reserved(engine):
    with pytest.raises(ReservedRootError):
        engine.mover.create_dir("/", "new")


def test_remove_dir(engine):
    engine.mover.create_dir("/movies/", "collection")
    with pytest.raises(DirectoryNotEmptyError):
        engine.mover.remove_dir("/movies/")
    with pytest.raises(DirNotFoundError):
        engine.mover.remove_dir("/movies/nothing/")
    with pytest.raises(DebridError):
        engine.mover.remove_dir("/")

    assert engine.mover.remove_dir("/movies/collection/") == ["/movies/collection/"]
    assert "/movies/collection/" not in rule_lines(engine)
    assert "/movies/collection/" not in engine.tables.folders
    assert "collection" not in child_names(engine, "/movies/")


def test_move_job_folder_records_job_key(engine):
    updates = engine.mover.move_dir("/default/Holiday Video/", "/movies/Holiday Video/")
    assert updates == {"/Holiday Video/": "/movies/Holiday Video/"}
    assert governing(engine, "/Holiday Video/") == ["/Holiday Video/ -> /movies/Holiday Video/"]
    assert child_names(engine, "/movies/Holiday Video/") == ["HV1"]
    assert "/default/Holiday Video/" not in engine.tables.folders

    engine.ensure_fresh(force=True)
    assert child_names(engine, "/movies/Holiday Video/") == ["HV1"]


def test_move_plain_folder_carries_recorded_and_default_children(engine):
    engine.mover.create_dir("/shows/", "drama")
    engine.mover.move_dir("/shows/Show.S01.1080p/", "/shows/drama/Show.S01.1080p/")
    engine.mover.move_dir("/shows/drama/", "/shows/series/")

    lines = rule_lines(engine)
    assert "/shows/series/" in lines
    assert "/Show.S01.1080p/ -> /shows/series/Show.S01.1080p/" in lines
    assert child_names(engine, "/shows/series/Show.S01.1080p/") == ["S1E1", "S1E2"]

    engine.ensure_fresh(force=True)
    assert child_names(engine, "/shows/series/") == ["Show.S01.1080p"]
    assert child_names(engine, "/shows/series/Show.S01.1080p/") == ["S1E1", "S1E2"]


def test_move_regex_folder_rewrites_rule(engine):
    engine.mover.move_dir("/movies/", "/films/")
    lines = rule_lines(engine)
    assert any(line.startswith("/films == ") for line in lines)
    assert not any(line.startswith("/movies == ") for line in lines)
    assert [rule.destination for rule in engine.tables.regex_rules] == ["/shows/", "/films/"]
    assert child_names(engine, "/films/Film.2019.1080p/") == ["film.2019.mkv"]

    engine.ensure_fresh(force=True)
    assert "films" in child_names(engine, "/")
    assert "movies" not in child_names(engine, "/")
    assert child_names(engine, "/films/Film.2019.1080p/") == ["film.2019.mkv"]


def test_move_root_is_rejected(engine):
    with pytest.raises(DebridError):
        engine.mover.move_dir("/", "/elsewhere/")


def test_move_round_trip_between_default_and_movies(engine):
    item = engine.tables.folders.find("/default/Holiday Video/", "HV1")
    engine.mover.move_file(item, "/movies/Holiday Video/", item.name)
    engine.ensure_fresh(force=True)

    assert child_names(engine, "/default/Holiday Video/") == []
    assert child_names(engine, "/movies/Holiday Video/") == ["HV1"]
    assert len(governing(engine, "/Holiday Video/HV1")) == 1


def test_rebuild_waits_for_move_computed_from_live_tables(engine):
    entered, release = threading.Event(), threading.Event()
    original = engine.mover._folder_updates

    def held_folder_updates(*args):
        entered.set()
        release.wait(5)
        return original(*args)

    with patch.object(engine.mover, "_folder_updates", side_effect=held_folder_updates):
        mover = threading.Thread(target=engine.mover.move_dir, args=("/movies/", "/films/"))
        mover.start()
        assert entered.wait(5)

        rebuild = threading.Thread(target=engine._rebuild)
        rebuild.start()
        rebuild.join(0.5)
        rebuild_blocked = rebuild.is_alive()
        release.set()
        mover.join(5)
        rebuild.join(5)

    assert rebuild_blocked
    assert [rule.destination for rule in engine.tables.regex_rules] == ["/shows/", "/films/"]
    assert child_names(engine, "/films/Film.2019.1080p/") == ["film.2019.mkv"]
    assert "/movies/" not in engine.tables.folders


def test_stale_trash_lines_do_not_complete_a_job(engine, mock_client):
    engine.rule_file.append_line("/Show.S01.1080p/GONE1 -> /shows/Show.S01.1080p/GONE1.trashed")
    engine.ensure_fresh(force=True)
    first = engine.tables.folders.find("/shows/Show.S01.1080p/", "S1E1")
    second = engine.tables.folders.find("/shows/Show.S01.1080p/", "S1E2")

    assert engine.mover.remove(first) is False
    assert mock_client.job("JOBSHOW") is not None
    assert engine.mover.remove(second) is True
    assert mock_client.job("JOBSHOW") is None


def test_trash_counts_files_of_job_missing_from_snapshot(engine, mock_client):
    first = engine.tables.folders.find("/shows/Show.S01.1080p/", "S1E1")
    with patch.object(engine.mover, "_torrents", return_value=[]):
        assert engine.mover.remove(first) is False
    assert ("torrent_info", "JOBSHOW") in mock_client.calls
    assert mock_client.job("JOBSHOW") is not None
    assert governing(engine, "/Show.S01.1080p/S1E1") == [
        "/Show.S01.1080p/S1E1 -> /shows/Show.S01.1080p/S1E1.trashed"
    ]


def test_trash_of_job_gone_from_remote(engine, mock_client):
    item = engine.tables.folders.find("/default/Holiday Video/", "HV1")
    mock_client.delete_torrent("JOBHOLIDAY")
    with patch.object(engine.mover, "_torrents", return_value=[]):
        with pytest.raises(ObjectNotFoundError):
            engine.mover.remove(item)
    assert engine.fetcher.is_stale()
    assert governing(engine, "/Holiday Video/HV1") == []
