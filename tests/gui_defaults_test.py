from pathlib import Path

from compress_engine import DEFAULT_QUALITY


def test_gui_default_compression_quality_is_30_percent():
    source = (Path(__file__).resolve().parents[1] / "zepb_merger_gui.py").read_text(encoding="utf-8")
    assert "self.quality = tk.IntVar(value=DEFAULT_QUALITY)" in source
    assert DEFAULT_QUALITY == 30


def test_gui_offers_compressing_selected_files():
    source = (Path(__file__).resolve().parents[1] / "zepb_merger_gui.py").read_text(encoding="utf-8")
    assert "filedialog.askopenfilenames(" in source
    assert "orchestrator.compress_files(files, self.compress_output_folder.get(), **options)" in source
