"""Tests for ProcessRegistry using real /bin/sh processes."""

from __future__ import annotations

import asyncio
import re
import sys
import time

import pytest

from agentloop.errors import ProcessSpawnError
from agentloop.runtime import process_registry
from agentloop.runtime.process_registry import ProcessRegistry

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")


async def wait_until(predicate, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.05)
    return predicate()


# ---------------------------------------------------------------------------
# Start / stop
# ---------------------------------------------------------------------------


class TestStartStop:
    @pytest.mark.asyncio
    async def test_start_list_and_stop(self, tmp_path):
        registry = ProcessRegistry()
        try:
            info = await registry.start("server", "sleep 30", cwd=str(tmp_path))

            assert info.name == "server"
            assert info.pid > 0
            assert info.pgid == info.pid
            assert info.command == "sleep 30"
            assert info.cwd == str(tmp_path)
            assert registry.is_running("server")
            assert [p.name for p in registry.list()] == ["server"]

            assert await registry.stop("server") is True
            assert len(registry) == 0
            assert not registry.is_running("server")
        finally:
            await registry.stop_all()

    @pytest.mark.asyncio
    async def test_restart_same_name_replaces_process(self):
        registry = ProcessRegistry()
        try:
            first = await registry.start("dev", "sleep 30")
            second = await registry.start("dev", "sleep 30")

            listed = registry.list()
            assert len(listed) == 1
            assert listed[0].pid == second.pid
            assert second.pid != first.pid
        finally:
            await registry.stop_all()

    @pytest.mark.asyncio
    async def test_stop_unknown_name(self):
        registry = ProcessRegistry()
        assert await registry.stop("nope") is False

    @pytest.mark.asyncio
    async def test_stop_all(self):
        registry = ProcessRegistry()
        await registry.start("a", "sleep 30")
        await registry.start("b", "sleep 30")
        assert len(registry) == 2

        await registry.stop_all()

        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_sigterm_ignored_escalates_to_sigkill(self, monkeypatch):
        monkeypatch.setattr(process_registry, "STOP_GRACE_SECONDS", 0.3)
        registry = ProcessRegistry()
        try:
            await registry.start(
                "stubborn",
                "trap '' TERM; echo armed; while true; do sleep 1; done",
                ready_pattern="armed",
                timeout=5,
            )
            start = time.monotonic()
            assert await registry.stop("stubborn") is True
            assert time.monotonic() - start < 3
            assert len(registry) == 0
        finally:
            await registry.stop_all()

    @pytest.mark.asyncio
    async def test_exited_process_is_dropped(self):
        registry = ProcessRegistry()
        await registry.start("oneshot", "echo hi; exit 0")
        assert await wait_until(lambda: len(registry) == 0)
        assert registry.get_output("oneshot") is None


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------


class TestReadyPattern:
    @pytest.mark.asyncio
    async def test_waits_for_matching_line(self):
        registry = ProcessRegistry()
        try:
            await registry.start(
                "web",
                "echo booting; sleep 0.2; echo 'listening on port 3000'; sleep 30",
                ready_pattern=r"listening on port \d+",
                timeout=5,
            )
            output = registry.get_output("web")
            assert output is not None
            assert "listening on port 3000" in output["stdout"]
        finally:
            await registry.stop_all()

    @pytest.mark.asyncio
    async def test_matches_stderr_too(self):
        registry = ProcessRegistry()
        try:
            await registry.start("warn", "echo 'ready on stderr' 1>&2; sleep 30", ready_pattern="ready on", timeout=5)
            assert "ready on stderr" in registry.get_output("warn")["stderr"]
        finally:
            await registry.stop_all()

    @pytest.mark.asyncio
    async def test_timeout_still_resolves(self):
        registry = ProcessRegistry()
        try:
            start = time.monotonic()
            info = await registry.start("quiet", "sleep 30", ready_pattern="never printed", timeout=0.3)
            assert time.monotonic() - start < 3
            assert info.pid > 0
            assert registry.is_running("quiet")
        finally:
            await registry.stop_all()

    @pytest.mark.asyncio
    async def test_exit_before_ready_resolves(self):
        registry = ProcessRegistry()
        start = time.monotonic()
        await registry.start("crash", "echo fatal 1>&2; exit 3", ready_pattern="ready", timeout=10)
        assert time.monotonic() - start < 5
        assert await wait_until(lambda: not registry.is_running("crash"))

    @pytest.mark.asyncio
    async def test_invalid_pattern_raises_before_spawning(self):
        registry = ProcessRegistry()
        with pytest.raises(re.error):
            await registry.start("bad", "sleep 30", ready_pattern="(unclosed")
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_invalid_pattern_keeps_existing_process(self):
        registry = ProcessRegistry()
        try:
            first = await registry.start("dev", "sleep 30")
            with pytest.raises(re.error):
                await registry.start("dev", "sleep 30", ready_pattern="(unclosed")

            assert registry.is_running("dev")
            assert registry.list()[0].pid == first.pid
        finally:
            await registry.stop_all()


# ---------------------------------------------------------------------------
# Output buffers
# ---------------------------------------------------------------------------


class TestOutput:
    @pytest.mark.asyncio
    async def test_get_output_tail(self):
        registry = ProcessRegistry()
        try:
            await registry.start("lines", "printf 'a\\nb\\nc\\n'; echo end; sleep 30", ready_pattern="^end$", timeout=5)
            assert registry.get_output("lines", lines=2)["stdout"] == "c\nend"
            assert registry.get_output("lines", lines=0)["stdout"] == ""
        finally:
            await registry.stop_all()

    @pytest.mark.asyncio
    async def test_ring_buffer_keeps_newest_lines(self):
        registry = ProcessRegistry(max_output_lines=3)
        try:
            await registry.start(
                "chatty",
                "for i in 1 2 3 4 5; do echo line$i; done; echo marker; sleep 30",
                ready_pattern="marker",
                timeout=5,
            )
            assert registry.get_output("chatty")["stdout"] == "line4\nline5\nmarker"
        finally:
            await registry.stop_all()

    def test_unknown_name_has_no_output(self):
        assert ProcessRegistry().get_output("ghost") is None


class TestSpawnFailure:
    @pytest.mark.asyncio
    async def test_missing_cwd_raises_spawn_error(self, tmp_path):
        registry = ProcessRegistry()
        with pytest.raises(ProcessSpawnError, match="Failed to start process 'api'"):
            await registry.start("api", "sleep 1", cwd=str(tmp_path / "does-not-exist"))
        assert len(registry) == 0
