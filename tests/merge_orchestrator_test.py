import json
import threading

from docx import Document
from pypdf import PdfReader

from merge_engine import MergeOrchestrator, RunLogger


def _orchestrator(**kwargs):
    kwargs.setdefault("enable_detailed_logging", False)
    return MergeOrchestrator(**kwargs)


def test_end_to_end_single_pair(merge_dirs, make_pdf):
    notifications_dir, zepb_dir, output_dir = merge_dirs
    make_pdf("notifications/Уведомление СПД-100.pdf", pages=1)
    make_pdf("zepb/ЗЭПБ СПД-100.pdf", pages=2)
    make_pdf("zepb/ЗЭПБ СПД-200.pdf", pages=1)

    result = _orchestrator().merge_documents(str(notifications_dir), str(zepb_dir), str(output_dir))

    summary = result["summary"]
    assert summary["processed"] == 1
    assert summary["skipped"] == 0
    assert summary["total"] == 1
    assert summary["errors"] == []
    assert summary["canceled"] is False
    assert result["unmatched_notifications"] == []
    assert result["unmatched_zepb"] == [{"code": "СПД-200", "file": "ЗЭПБ СПД-200.pdf"}]

    merged = output_dir / "ЗЭПБ СПД-100 (с увед).pdf"
    assert merged.exists()
    assert len(PdfReader(str(merged)).pages) == 3

    registry = Document(result["registry"])
    rows = [[cell.text for cell in row.cells] for row in registry.tables[0].rows]
    assert rows[1:] == [["1", "ЗЭПБ СПД-100 (с увед)"]]
    assert "Merged: ЗЭПБ СПД-100 (с увед).pdf" in summary["log"]


def test_merge_dictionaries_with_prebuilt_dictionaries(tmp_path, make_pdf):
    a = make_pdf("n/a.pdf")
    b = make_pdf("z/zepb_b.pdf")
    c = make_pdf("z/zepb_c.pdf")
    orchestrator = _orchestrator()
    summary = orchestrator.new_summary()

    registry = orchestrator.merge_dictionaries(
        {"СПД-100": str(a)},
        {"СПД-100": str(b), "СПД-200": str(c)},
        str(tmp_path / "out"),
        summary,
    )

    assert (tmp_path / "out" / "zepb_b (с увед).pdf").exists()
    assert summary["processed"] == 1
    assert summary["skipped"] == 0
    assert summary["total"] == 1
    assert summary["errors"] == []
    assert registry is not None


def test_notification_without_zepb_is_skipped(merge_dirs, make_pdf):
    notifications_dir, zepb_dir, output_dir = merge_dirs
    make_pdf("notifications/Уведомление СПД-1.pdf")
    make_pdf("notifications/Уведомление СПД-2.pdf")
    make_pdf("zepb/ЗЭПБ СПД-1.pdf")

    result = _orchestrator().merge_documents(str(notifications_dir), str(zepb_dir), str(output_dir))

    summary = result["summary"]
    assert summary["total"] == 2
    assert summary["processed"] == 1
    assert summary["skipped"] == 1
    assert summary["errors"] == []
    assert result["unmatched_notifications"] == [{"code": "СПД-2", "file": "Уведомление СПД-2.pdf"}]
    assert any(line.startswith("ZEPB not found") for line in summary["log"])


def test_already_processed_zepb_is_skipped_defensively(tmp_path, make_pdf):
    notification = make_pdf("n/1.pdf")
    zepb = make_pdf("z/ЗЭПБ СПД-1 (с увед).pdf")
    orchestrator = _orchestrator()
    summary = orchestrator.new_summary()

    registry = orchestrator.merge_dictionaries(
        {"СПД-1": str(notification)}, {"СПД-1": str(zepb)}, str(tmp_path / "out"), summary
    )

    assert registry is None
    assert summary["processed"] == 0
    assert summary["skipped"] == 1
    assert summary["log"] == ["Skipped already processed ZEPB: ЗЭПБ СПД-1 (с увед).pdf"]


def test_failed_pair_does_not_stop_the_run(merge_dirs, make_pdf, tmp_path):
    notifications_dir, zepb_dir, output_dir = merge_dirs
    (notifications_dir / "Уведомление СПД-1.pdf").write_text("corrupt", encoding="utf-8")
    make_pdf("notifications/Уведомление СПД-2.pdf")
    make_pdf("zepb/ЗЭПБ СПД-1.pdf")
    make_pdf("zepb/ЗЭПБ СПД-2.pdf")
    progress = []

    result = _orchestrator().merge_documents(
        str(notifications_dir), str(zepb_dir), str(output_dir), progress_callback=progress.append
    )

    summary = result["summary"]
    assert summary["processed"] == 1
    assert summary["skipped"] == 1
    assert len(summary["errors"]) == 1
    assert summary["errors"][0].startswith("Error merging code СПД-1:")
    assert summary["errors"][0] in summary["log"]
    assert not (output_dir / "ЗЭПБ СПД-1 (с увед).pdf").exists()
    assert (output_dir / "ЗЭПБ СПД-2 (с увед).pdf").exists()
    assert [event["current"] for event in progress] == [1, 2]
    assert progress[-1]["output_filename"] == "ЗЭПБ СПД-2 (с увед).pdf"
    assert result["registry"] is not None


def test_cancellation_stops_before_remaining_pairs(merge_dirs, make_pdf):
    notifications_dir, zepb_dir, output_dir = merge_dirs
    for n in range(1, 6):
        make_pdf(f"notifications/Уведомление СПД-{n}.pdf")
        make_pdf(f"zepb/ЗЭПБ СПД-{n}.pdf")

    cancel_event = threading.Event()
    progress = []
    completions = []

    def on_progress(payload):
        progress.append(payload)
        if payload["current"] == 2:
            cancel_event.set()

    result = _orchestrator().merge_documents(
        str(notifications_dir),
        str(zepb_dir),
        str(output_dir),
        progress_callback=on_progress,
        complete_callback=completions.append,
        cancel_event=cancel_event,
    )

    summary = result["summary"]
    assert summary["canceled"] is True
    assert result["canceled"] is True
    assert summary["processed"] + summary["skipped"] <= 2
    assert summary["processed"] == 2
    assert not (output_dir / "ЗЭПБ СПД-3 (с увед).pdf").exists()
    assert progress[-1]["message"] == "Merge cancelled by user"
    assert progress[-1]["current"] == 3
    assert "Merge cancelled by user" in summary["log"]
    assert len(completions) == 1
    assert result["registry"] is not None


def test_cancel_set_before_first_pair_attempts_nothing(tmp_path, make_pdf):
    notification = make_pdf("n/1.pdf")
    zepb = make_pdf("z/ЗЭПБ СПД-1.pdf")
    cancel_event = threading.Event()
    cancel_event.set()
    orchestrator = _orchestrator()
    summary = orchestrator.new_summary()

    registry = orchestrator.merge_dictionaries(
        {"СПД-1": str(notification)}, {"СПД-1": str(zepb)}, str(tmp_path / "out"), summary,
        cancel_event=cancel_event,
    )

    assert registry is None
    assert summary["canceled"] is True
    assert summary["processed"] == 0
    assert summary["skipped"] == 0
    assert not (tmp_path / "out" / "ЗЭПБ СПД-1 (с увед).pdf").exists()


def test_stale_cancellation_does_not_leak_into_new_run(merge_dirs, make_pdf):
    notifications_dir, zepb_dir, output_dir = merge_dirs
    make_pdf("notifications/Уведомление СПД-1.pdf")
    make_pdf("zepb/ЗЭПБ СПД-1.pdf")
    cancel_event = threading.Event()
    cancel_event.set()

    result = _orchestrator().merge_documents(
        str(notifications_dir), str(zepb_dir), str(output_dir), cancel_event=cancel_event
    )

    assert result["summary"]["canceled"] is False
    assert result["summary"]["processed"] == 1


def test_missing_folder_aborts_before_any_work(tmp_path):
    completions = []
    output_dir = tmp_path / "output"

    result = _orchestrator().merge_documents(
        "", str(tmp_path / "zepb"), str(output_dir), complete_callback=completions.append
    )

    assert result["summary"]["errors"] == ["Merge error: folders are not specified"]
    assert result["summary"]["log"] == ["Merge error: folders are not specified"]
    assert result["summary"]["processed"] == 0
    assert result["registry"] is None
    assert not output_dir.exists()
    assert completions == [result]


def test_registry_failure_does_not_mask_merge_results(merge_dirs, make_pdf):
    notifications_dir, zepb_dir, output_dir = merge_dirs
    make_pdf("notifications/Уведомление СПД-1.pdf")
    make_pdf("zepb/ЗЭПБ СПД-1.pdf")

    class BrokenRegistry:
        def generate(self, output_folder, processed_filenames):
            raise OSError("disk full")

    result = _orchestrator(registry_generator=BrokenRegistry()).merge_documents(
        str(notifications_dir), str(zepb_dir), str(output_dir)
    )

    summary = result["summary"]
    assert result["registry"] is None
    assert summary["processed"] == 1
    assert summary["skipped"] == 0
    assert summary["errors"] == []
    assert "Could not create registry: disk full" in summary["log"]


def test_failing_ui_callbacks_do_not_break_the_run(merge_dirs, make_pdf):
    notifications_dir, zepb_dir, output_dir = merge_dirs
    make_pdf("notifications/Уведомление СПД-1.pdf")
    make_pdf("zepb/ЗЭПБ СПД-1.pdf")

    def explode(_payload):
        raise RuntimeError("window destroyed")

    result = _orchestrator().merge_documents(
        str(notifications_dir),
        str(zepb_dir),
        str(output_dir),
        progress_callback=explode,
        unmatched_callback=explode,
        complete_callback=explode,
        event_callback=explode,
    )

    assert result["summary"]["processed"] == 1


def test_output_folder_inside_notification_root_is_not_rescanned(tmp_path, make_pdf):
    notifications_dir = tmp_path / "notifications"
    output_dir = notifications_dir / "merged"
    make_pdf("notifications/Уведомление СПД-1.pdf")
    make_pdf("notifications/merged/Уведомление СПД-2.pdf")
    make_pdf("zepb/ЗЭПБ СПД-1.pdf")
    make_pdf("zepb/ЗЭПБ СПД-2.pdf")

    result = _orchestrator().merge_documents(
        str(notifications_dir), str(tmp_path / "zepb"), str(output_dir), recursive_notifications=True
    )

    assert result["summary"]["total"] == 1
    assert [item["code"] for item in result["unmatched_zepb"]] == ["СПД-2"]


def test_sequential_scan_matches_parallel_scan(merge_dirs, make_pdf):
    notifications_dir, zepb_dir, _ = merge_dirs
    for n in (3, 1, 2):
        make_pdf(f"notifications/Уведомление СПД-{n}.pdf")
        make_pdf(f"zepb/ЗЭПБ СПД-{n}.pdf")

    parallel = _orchestrator().build_dictionaries(str(notifications_dir), str(zepb_dir))
    sequential = _orchestrator(parallel_scan=False).build_dictionaries(str(notifications_dir), str(zepb_dir))

    assert parallel == sequential
    assert list(parallel[0]) == ["СПД-1", "СПД-2", "СПД-3"]


def test_run_log_files_are_written(merge_dirs, make_pdf):
    notifications_dir, zepb_dir, output_dir = merge_dirs
    make_pdf("notifications/Уведомление СПД-1.pdf")
    make_pdf("zepb/ЗЭПБ СПД-1.pdf")
    events = []

    MergeOrchestrator().merge_documents(
        str(notifications_dir), str(zepb_dir), str(output_dir), event_callback=events.append
    )

    jsonl_files = list((output_dir / "logs").glob("run_*.jsonl"))
    assert len(jsonl_files) == 1
    records = [json.loads(line) for line in jsonl_files[0].read_text(encoding="utf-8").splitlines()]
    logged = [record["event"] for record in records]
    assert logged[0] == "run_start"
    assert "pair_merged" in logged
    assert "registry_written" in logged
    assert logged[-1] == "run_complete"
    assert [event["event"] for event in events] == logged
    merged = next(record for record in records if record["event"] == "pair_merged")
    assert merged["context"]["output"] == "ЗЭПБ СПД-1 (с увед).pdf"


def test_missing_folder_event_has_the_run_record_shape(tmp_path):
    events = []

    _orchestrator().merge_documents(
        str(tmp_path / "notifications"), "", str(tmp_path / "output"), event_callback=events.append
    )

    assert len(events) == 1
    event = events[0]
    assert set(event) == {"ts", "run_id", "level", "event", "message", "context"}
    assert event["event"] == "run_invalid_config"
    assert event["level"] == "ERROR"
    assert event["message"] == "Merge error: folders are not specified"
    assert event["run_id"]
    assert not (tmp_path / "output").exists()


def test_run_logger_writes_text_line_with_redacted_paths(tmp_path):
    events = []
    logger = RunLogger(str(tmp_path / "logs"), run_id="r1", event_callback=events.append)
    logger.log("info", "pair_merged", "Merged: x.pdf", output=str(tmp_path / "deep" / "x.pdf"), pages=3)
    logger.close()

    text = (tmp_path / "logs" / "run_r1.log").read_text(encoding="utf-8").splitlines()
    assert len(text) == 1
    assert text[0].endswith("INFO pair_merged: Merged: x.pdf | output=x.pdf, pages=3")
    assert events[0]["context"] == {"output": "x.pdf", "pages": 3}


def test_disabled_run_logger_only_forwards_events(tmp_path):
    events = []
    logger = RunLogger(str(tmp_path / "logs"), enabled=False, privacy_mode="full", event_callback=events.append)
    logger.log("warning", "registry_failed", "boom", path="/a/b/c.docx")

    assert not logger.enabled
    assert not (tmp_path / "logs").exists()
    assert events[0]["context"] == {"path": "/a/b/c.docx"}
    assert events[0]["level"] == "WARNING"
