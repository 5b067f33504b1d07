"""Unit tests for the deployment target lease."""

from __future__ import annotations

import fcntl
import os
from pathlib import Path

import pytest

from keel.errors import TargetLockedError
from keel.lock import get_lock_dir, lock_path_for, target_lock


class TestLockPaths:
    def test_lock_dir_from_environment(self, lock_dir: Path) -> None:
        assert get_lock_dir() == lock_dir
        assert lock_dir.is_dir()

    def test_path_is_stable_per_target(self, tmp_path: Path) -> None:
        first = lock_path_for("vps.example.com/backend-api", tmp_path)

        assert first == lock_path_for("vps.example.com/backend-api", tmp_path)
        assert first != lock_path_for("vps.example.com/frontend", tmp_path)
        assert first.name.startswith("target-")
        assert first.suffix == ".lock"


class TestTargetLock:
    def test_acquire_and_release(self, tmp_path: Path) -> None:
        with target_lock("vps/api", timeout_seconds=1, lock_dir=tmp_path) as path:
            assert path.exists()

        # Released: can be taken again immediately
        with target_lock("vps/api", timeout_seconds=0, lock_dir=tmp_path):
            pass

    def test_held_lock_times_out(self, tmp_path: Path) -> None:
        path = lock_path_for("vps/api", tmp_path)
        path.touch()
        fd = os.open(str(path), os.O_RDWR)
        fcntl.flock(fd, fcntl.LOCK_EX)
        try:
            with pytest.raises(TargetLockedError) as exc_info:
                with target_lock("vps/api", timeout_seconds=0.3, lock_dir=tmp_path):
                    pass
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

        assert exc_info.value.target == "vps/api"
        assert exc_info.value.timeout_seconds == 0.3

    def test_different_targets_do_not_contend(self, tmp_path: Path) -> None:
        with target_lock("vps/api", timeout_seconds=0, lock_dir=tmp_path):
            with target_lock("vps/worker", timeout_seconds=0, lock_dir=tmp_path):
                pass

    def test_released_when_body_raises(self, tmp_path: Path) -> None:
        with pytest.raises(RuntimeError):
            with target_lock("vps/api", timeout_seconds=0, lock_dir=tmp_path):
                raise RuntimeError("deploy exploded")

        with target_lock("vps/api", timeout_seconds=0, lock_dir=tmp_path):
            pass
