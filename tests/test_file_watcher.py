import os
import threading
from concurrent.futures import ThreadPoolExecutor

from watchdog.events import DirCreatedEvent, FileCreatedEvent

from insider_threat_monitor.file_watcher import (
    FolderWatcher,
    SettledFileHandler,
    default_monitored_paths,
    is_hidden,
    wait_for_stable_size,
)


def test_is_hidden():
    assert is_hidden("/home/dana/.cache/report.pdf")
    assert is_hidden("/home/dana/Downloads/.~lock.report.odt")
    assert not is_hidden("/home/dana/Downloads/report.pdf")
    assert not is_hidden("./report.pdf")


def test_wait_for_stable_size(tmp_path):
    target = tmp_path / "report.pdf"
    target.write_bytes(b"x" * 512)

    assert wait_for_stable_size(str(target), 0.05, 0.01) == 512
    assert wait_for_stable_size(str(tmp_path / "missing.pdf"), 0.05, 0.01) is None


def test_handler_reports_settled_files_only(tmp_path):
    target = tmp_path / "payroll.xlsx"
    target.write_bytes(b"x" * 2048)
    hidden = tmp_path / ".payroll.xlsx.swp"
    hidden.write_bytes(b"x")

    seen = []
    done = threading.Event()

    def sink(path, size, timestamp):
        seen.append((path, size))
        done.set()

    with ThreadPoolExecutor(max_workers=1) as executor:
        handler = SettledFileHandler(sink, executor, stability_seconds=0.05, poll_interval=0.01)
        handler.on_created(DirCreatedEvent(str(tmp_path / "subdir")))
        handler.on_created(FileCreatedEvent(str(hidden)))
        handler.on_created(FileCreatedEvent(str(target)))
        assert done.wait(timeout=2)

    assert seen == [(str(target), 2048)]


def test_default_paths_from_environment(tmp_path, monkeypatch):
    existing = tmp_path / "exports"
    existing.mkdir()
    monkeypatch.setenv("MONITORED_PATHS", os.pathsep.join([str(existing), str(tmp_path / "missing")]))

    assert default_monitored_paths() == [str(existing)]


def test_folder_watcher_reports_new_files(tmp_path):
    seen = []
    done = threading.Event()

    def sink(path, size, timestamp):
        seen.append(path)
        done.set()

    watcher = FolderWatcher([str(tmp_path)], stability_seconds=0.05, poll_interval=0.01)
    try:
        assert watcher.watch("emp-1", sink)
        assert not watcher.watch("emp-1", sink)
        (tmp_path / "export.csv").write_text("id,amount\n1,100\n")
        assert done.wait(timeout=5)
    finally:
        watcher.close()

    assert seen == [str(tmp_path / "export.csv")]
