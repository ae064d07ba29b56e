import os
import stat
from datetime import datetime, timedelta

import pytest
from rich.console import Console

from fireflyinstaller.errors import InstallerError
from fireflyinstaller.services.backup import BackupManager, unique_path
from fireflyinstaller.services.filesystem import FileSystemService


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None

    def debug(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


class SteppingClock:
    def __init__(self, start=datetime(2024, 5, 1, 12, 0, 0)):
        self.current = start

    def __call__(self):
        value = self.current
        self.current = self.current + timedelta(seconds=1)
        return value


def build_manager(clock=None):
    logger = DummyLogger()
    console = Console(record=True)
    filesystem = FileSystemService(logger=logger, console=console)
    return BackupManager(filesystem_service=filesystem, logger=logger, console=console, clock=clock)


def snapshot_tree(root):
    state = {}
    for current_root, dirs, files in os.walk(root):
        for name in dirs + files:
            path = os.path.join(current_root, name)
            relative = os.path.relpath(path, root)
            mode = stat.S_IMODE(os.lstat(path).st_mode)
            content = None
            if os.path.isfile(path):
                with open(path, "rb") as file_obj:
                    content = file_obj.read()
            state[relative] = (mode, content)
    return state


@pytest.fixture
def installation(tmp_path):
    root = tmp_path / "firefly-iii"
    (root / "storage" / "upload").mkdir(parents=True)
    (root / "artisan").write_text("<?php // artisan", encoding="utf-8")
    (root / ".env").write_text("APP_KEY=base64:abc\n", encoding="utf-8")
    (root / "storage" / "upload" / "receipt.pdf").write_bytes(b"%PDF")
    os.chmod(root / "artisan", 0o755)
    os.chmod(root / ".env", 0o640)
    os.chmod(root / "storage", 0o775)
    return root


def test_backup_restore_round_trip_is_byte_identical(installation):
    manager = build_manager()
    before = snapshot_tree(installation)

    snapshot = manager.snapshot(str(installation))
    (installation / "artisan").write_text("half-updated", encoding="utf-8")
    (installation / "new-file.txt").write_text("junk", encoding="utf-8")
    os.chmod(installation / ".env", 0o644)

    manager.restore(snapshot)

    assert snapshot_tree(installation) == before
    assert not os.path.exists(snapshot.destination)


def test_snapshot_uses_timestamped_sibling(installation):
    manager = build_manager(clock=lambda: datetime(2024, 5, 1, 12, 30, 45))

    snapshot = manager.snapshot(str(installation))

    assert snapshot.destination == f"{installation}-backup-20240501123045"
    assert snapshot.source == str(installation)
    assert os.path.isfile(os.path.join(snapshot.destination, "artisan"))


def test_snapshot_appends_suffix_on_collision(installation):
    manager = build_manager(clock=lambda: datetime(2024, 5, 1, 12, 30, 45))

    first = manager.snapshot(str(installation))
    second = manager.snapshot(str(installation))

    assert first.destination != second.destination
    assert second.destination.startswith(f"{first.destination}_")
    assert os.path.isdir(first.destination)


def test_restore_after_failed_move_recovers_missing_directory(installation, tmp_path):
    manager = build_manager()
    snapshot = manager.snapshot(str(installation))
    before = snapshot_tree(installation)

    os.rename(installation, tmp_path / "moved-aside")
    manager.restore(snapshot)

    assert snapshot_tree(installation) == before


def test_restore_without_backup_directory_raises(installation):
    manager = build_manager()
    snapshot = manager.snapshot(str(installation))
    manager.filesystem_service.cleanup_dir(snapshot.destination)

    with pytest.raises(InstallerError, match="Restoring"):
        manager.restore(snapshot)


def test_snapshot_of_missing_directory_raises(tmp_path):
    manager = build_manager()

    with pytest.raises(InstallerError, match="does not exist"):
        manager.snapshot(str(tmp_path / "absent"))


def test_prune_keeps_newest_backups(installation):
    manager = build_manager(clock=SteppingClock())
    created = [manager.snapshot(str(installation)).destination for _ in range(4)]

    removed = manager.prune(str(installation), keep=2)

    assert removed == created[:2]
    assert manager.list_backups(str(installation)) == created[2:]


def test_prune_disabled_with_zero_retention(installation):
    manager = build_manager(clock=SteppingClock())
    for _ in range(3):
        manager.snapshot(str(installation))

    assert manager.prune(str(installation), keep=0) == []
    assert len(manager.list_backups(str(installation))) == 3


def test_unique_path_returns_free_path_untouched(tmp_path):
    assert unique_path(str(tmp_path / "free")) == str(tmp_path / "free")


def test_unique_path_uses_token_factory(tmp_path):
    (tmp_path / "taken").mkdir()
    tokens = iter(["aaaa", "bbbb"])
    (tmp_path / "taken_aaaa").mkdir()

    assert unique_path(str(tmp_path / "taken"), token_factory=lambda: next(tokens)) == str(tmp_path / "taken_bbbb")


@pytest.fixture
def complete_installation(installation):
    (installation / "composer.json").write_text("{}", encoding="utf-8")
    for name in ("app", "config", "public"):
        (installation / name).mkdir()
    return installation


def test_verified_snapshot_of_complete_installation(complete_installation):
    manager = build_manager()

    snapshot = manager.snapshot(str(complete_installation), verify=True)

    assert os.path.isfile(os.path.join(snapshot.destination, "composer.json"))
    assert os.path.isdir(os.path.join(snapshot.destination, "public"))


def test_verify_rejects_copy_that_lost_files(complete_installation):
    manager = build_manager()
    snapshot = manager.snapshot(str(complete_installation))
    os.remove(os.path.join(snapshot.destination, ".env"))

    with pytest.raises(InstallerError, match=r"missing: \.env"):
        manager.verify(snapshot)
    assert not os.path.exists(snapshot.destination)
    assert (complete_installation / ".env").exists()


def test_verified_snapshot_rejects_directory_that_is_not_an_installation(installation):
    manager = build_manager()

    with pytest.raises(InstallerError, match="backup of .* is incomplete"):
        manager.snapshot(str(installation), verify=True)
    assert manager.list_backups(str(installation)) == []


def test_verify_tolerates_few_items_missing_from_source(complete_installation):
    manager = build_manager()
    (complete_installation / "composer.json").unlink()

    snapshot = manager.snapshot(str(complete_installation), verify=True)

    assert os.path.isdir(snapshot.destination)
