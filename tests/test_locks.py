"""Tests for the per-user lock registry."""

from __future__ import annotations

import sys
import threading
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from relayguard.utils.locks import LockTimeout, UserLockRegistry


class TestUserLockRegistry:
    """Tests for UserLockRegistry."""

    def test_lock_is_reentrant(self) -> None:
        registry = UserLockRegistry()
        with registry.hold("1"):
            with registry.hold("1"):
                assert len(registry) == 1

    def test_idle_locks_are_dropped(self) -> None:
        registry = UserLockRegistry()
        with registry.hold("1"):
            with registry.hold("2"):
                assert len(registry) == 2
        assert len(registry) == 0

    def test_timeout_when_held_elsewhere(self) -> None:
        """Test that a second thread gives up after the timeout."""
        registry = UserLockRegistry(timeout=0.05)
        acquired = threading.Event()
        release = threading.Event()

        def holder() -> None:
            with registry.hold("1"):
                acquired.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        try:
            assert acquired.wait(5)
            with pytest.raises(LockTimeout) as exc_info:
                with registry.hold("1"):
                    pass
            assert exc_info.value.user_id == "1"
        finally:
            release.set()
            thread.join()

        assert len(registry) == 0

    def test_different_users_do_not_block(self) -> None:
        registry = UserLockRegistry(timeout=0.05)
        acquired = threading.Event()
        release = threading.Event()

        def holder() -> None:
            with registry.hold("1"):
                acquired.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        try:
            assert acquired.wait(5)
            with registry.hold("2"):
                pass
        finally:
            release.set()
            thread.join()

    def test_serializes_updates(self) -> None:
        """Test that read-modify-write under the lock loses no updates."""
        registry = UserLockRegistry()
        counter = {"value": 0}

        def bump() -> None:
            for _ in range(200):
                with registry.hold("1"):
                    current = counter["value"]
                    counter["value"] = current + 1

        threads = [threading.Thread(target=bump) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert counter["value"] == 1600
