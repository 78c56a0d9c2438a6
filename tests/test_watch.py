import asyncio
from pathlib import Path

import pytest

from wasmbundle.watch import WatchSystem, is_blacklisted


class _Counter:
    def __init__(self, fail: bool = False) -> None:
        self.builds = 0
        self.done = 0
        self.fail = fail

    async def build(self) -> None:
        self.builds += 1
        if self.fail:
            raise RuntimeError("build broke")

    def notify(self) -> None:
        self.done += 1


def test_is_blacklisted_git_segment():
    assert is_blacklisted(Path("/project/.git/HEAD")) is True


def test_is_blacklisted_plain_path():
    assert is_blacklisted(Path("/project/src/main.rs")) is False


def test_is_blacklisted_only_whole_segments():
    assert is_blacklisted(Path("/project/.github/workflow.yml")) is False


def test_update_ignore_list_canonicalizes_and_dedups(tmp_path):
    watch = WatchSystem(_Counter().build)
    target = tmp_path / "dist"
    target.mkdir()
    watch.update_ignore_list(tmp_path / "dist" / ".." / "dist")
    watch.update_ignore_list(target)
    assert watch.ignored_paths == [target.resolve()]


def test_update_ignore_list_keeps_missing_path(tmp_path):
    watch = WatchSystem(_Counter().build)
    missing = tmp_path / "not-there"
    watch.update_ignore_list(missing)
    assert watch.ignored_paths == [missing]


@pytest.mark.asyncio
async def test_build_runs_builder():
    counter = _Counter()
    watch = WatchSystem(counter.build)
    await watch.build()
    assert counter.builds == 1


@pytest.mark.asyncio
async def test_build_propagates_errors():
    watch = WatchSystem(_Counter(fail=True).build)
    with pytest.raises(RuntimeError):
        await watch.build()


@pytest.mark.asyncio
async def test_handle_event_triggers_build_and_notifies(tmp_path):
    counter = _Counter()
    watch = WatchSystem(counter.build, on_build_done=counter.notify)
    changed = tmp_path / "index.html"
    changed.write_text("x")
    assert await watch.handle_watch_event(changed) is True
    assert (counter.builds, counter.done) == (1, 1)


@pytest.mark.asyncio
async def test_handle_event_build_failure_still_notifies(tmp_path):
    counter = _Counter(fail=True)
    watch = WatchSystem(counter.build, on_build_done=counter.notify)
    changed = tmp_path / "style.css"
    changed.write_text("x")
    assert await watch.handle_watch_event(changed) is True
    assert counter.done == 1


@pytest.mark.asyncio
async def test_handle_event_ignores_missing_path(tmp_path):
    counter = _Counter()
    watch = WatchSystem(counter.build)
    assert await watch.handle_watch_event(tmp_path / "gone") is False
    assert counter.builds == 0


@pytest.mark.asyncio
async def test_handle_event_ignores_ignored_subtree(tmp_path):
    counter = _Counter()
    ignored = tmp_path / "target"
    (ignored / "debug").mkdir(parents=True)
    changed = ignored / "debug" / "out.wasm"
    changed.write_bytes(b"\0")
    watch = WatchSystem(counter.build, ignored_paths=[ignored.resolve()])
    assert await watch.handle_watch_event(changed) is False
    assert counter.builds == 0


@pytest.mark.asyncio
async def test_handle_event_ignores_blacklisted(tmp_path):
    counter = _Counter()
    git_dir = tmp_path / ".git"
    git_dir.mkdir()
    changed = git_dir / "index"
    changed.write_text("x")
    watch = WatchSystem(counter.build)
    assert await watch.handle_watch_event(changed) is False
    assert counter.builds == 0


@pytest.mark.asyncio
async def test_run_consumes_ignore_channel(tmp_path):
    watch = WatchSystem(_Counter().build)
    task = asyncio.create_task(watch.run())
    await watch.ignore_chan.put(tmp_path)
    for _ in range(200):
        if watch.ignored_paths:
            break
        await asyncio.sleep(0.01)
    watch.shutdown.set()
    await asyncio.wait_for(task, 5)
    assert watch.ignored_paths == [tmp_path.resolve()]


@pytest.mark.asyncio
async def test_run_stops_on_shutdown():
    watch = WatchSystem(_Counter().build)
    watch.shutdown.set()
    await asyncio.wait_for(watch.run(), 5)
    assert watch.shutdown.is_set()


@pytest.mark.asyncio
async def test_run_rejects_missing_watch_path(tmp_path):
    watch = WatchSystem(_Counter().build, paths=[tmp_path / "missing"])
    with pytest.raises(FileNotFoundError):
        await watch.run()


@pytest.mark.asyncio
async def test_run_builds_on_file_change(tmp_path):
    counter = _Counter()
    watch = WatchSystem(
        counter.build, paths=[tmp_path], on_build_done=counter.notify, debounce=0.05
    )
    task = asyncio.create_task(watch.run())
    changed = tmp_path / "main.rs"
    for round_ in range(50):
        changed.write_text(f"fn main() {{}} // {round_}")
        await asyncio.sleep(0.1)
        if counter.builds:
            break
    watch.shutdown.set()
    await asyncio.wait_for(task, 5)
    assert counter.builds >= 1
    assert counter.done == counter.builds