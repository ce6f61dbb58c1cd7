from pathlib import Path
import shutil
import os
import tempfile
import uuid

import pytest
from pypdf import PdfWriter


@pytest.fixture
def tmp_path():
    """
    Local override for pytest's tmp_path fixture.
    Some Windows environments create tmp roots with restrictive ACLs that
    break test setup/teardown. This keeps temp dirs under LOCALAPPDATA/Temp.
    """
    base_root = Path(os.environ.get("LOCALAPPDATA", tempfile.gettempdir()))
    base = base_root / "Temp" / "zepb_pytest_cases"
    base.mkdir(parents=True, exist_ok=True)
    path = base / f"case_{uuid.uuid4().hex}"
    path.mkdir(parents=True, exist_ok=False)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def merge_dirs(tmp_path: Path):
    notifications_dir = tmp_path / "notifications"
    zepb_dir = tmp_path / "zepb"
    output_dir = tmp_path / "output"
    notifications_dir.mkdir(parents=True, exist_ok=True)
    zepb_dir.mkdir(parents=True, exist_ok=True)
    return notifications_dir, zepb_dir, output_dir


@pytest.fixture
def make_pdf(tmp_path: Path):
    def _make(relative: str, pages: int = 1, width: int = 72, mtime: float = None) -> Path:
        path = tmp_path / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        writer = PdfWriter()
        for _ in range(pages):
            writer.add_blank_page(width=width, height=72)
        with path.open("wb") as handle:
            writer.write(handle)
        if mtime is not None:
            os.utime(path, (mtime, mtime))
        return path

    return _make
