"""
ZEPB Merger Compression Engine
Batch PDF compression through Ghostscript, with a pypdf rewrite when
Ghostscript is not installed
"""

import atexit
import os
import shutil
import subprocess
import sys
import tempfile
import threading
from contextlib import contextmanager
from typing import List, Dict, Optional, Set, Any, Callable

try:
    from pypdf import PdfReader, PdfWriter
    HAS_PYPDF = True
except ImportError:
    HAS_PYPDF = False

from merge_engine import _safe_progress

GHOSTSCRIPT_CANDIDATES = ('gswin64c', 'gswin32c', 'gs')

DEFAULT_QUALITY = 30

# Staging folders still present at exit (e.g. the window was closed mid-batch).
_staging_dirs: Set[str] = set()
_staging_lock = threading.Lock()


@atexit.register
def _remove_leftover_staging_dirs():
    with _staging_lock:
        while _staging_dirs:
            shutil.rmtree(_staging_dirs.pop(), ignore_errors=True)


@contextmanager
def _staging_dir():
    """
    Scratch folder with a generated ASCII name.
    Ghostscript on Windows cannot open paths with Cyrillic characters, so the
    input is copied here as in.pdf and the result is written as out.pdf.
    """
    path = tempfile.mkdtemp(prefix="zepb_gs_")
    with _staging_lock:
        _staging_dirs.add(path)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        with _staging_lock:
            _staging_dirs.discard(path)


def quality_to_pdf_settings(quality: int) -> str:
    """Map a 0-100 quality percentage to a Ghostscript -dPDFSETTINGS preset."""
    quality = max(0, min(100, int(quality)))
    if quality <= 12:
        return '/screen'
    if quality <= 25:
        return '/ebook'
    if quality <= 40:
        return '/printer'
    return '/prepress'


def _bundled_ghostscript() -> Optional[str]:
    """Ghostscript shipped next to the frozen executable, if any."""
    base = getattr(sys, "_MEIPASS", None)
    if base is None and getattr(sys, "frozen", False):
        base = os.path.dirname(sys.executable)
    if not base:
        return None
    name = "gswin64c.exe" if os.name == "nt" else "gs"
    candidate = os.path.join(base, "ghostscript", "bin", name)
    return candidate if os.path.isfile(candidate) else None


def _probe_ghostscript(command: str) -> bool:
    try:
        result = subprocess.run([command, "--version"], capture_output=True, text=True, check=False)
        return result.returncode == 0
    except (OSError, subprocess.SubprocessError):
        return False


def find_ghostscript() -> Optional[str]:
    """Return a working Ghostscript command: bundled copy first, then PATH."""
    bundled = _bundled_ghostscript()
    if bundled:
        if _probe_ghostscript(bundled):
            return bundled
        print(f"[GS] bundled Ghostscript failed self-test: {bundled}")

    for candidate in GHOSTSCRIPT_CANDIDATES:
        if _probe_ghostscript(candidate):
            return candidate
    return None


def compress_with_ghostscript(gs_cmd: str, input_path: str, output_path: str, quality: int) -> Dict[str, Any]:
    """
    Run Ghostscript pdfwrite over one file.

    Returns:
        Dict with 'success' and either 'error' or captured 'stdout'/'stderr'
    """
    cmd = [
        gs_cmd,
        "-sDEVICE=pdfwrite",
        "-dCompatibilityLevel=1.4",
        f"-dPDFSETTINGS={quality_to_pdf_settings(quality)}",
        "-dNOPAUSE",
        "-dQUIET",
        "-dBATCH",
        f"-sOutputFile={output_path}",
        input_path,
    ]
    try:
        completed = subprocess.run(cmd, capture_output=True, text=True, check=True)
    except subprocess.CalledProcessError as exc:
        return {'success': False, 'error': f"Ghostscript failed: {(exc.stderr or str(exc)).strip()}"}
    except OSError as exc:
        return {'success': False, 'error': str(exc)}

    if not os.path.exists(output_path):
        return {'success': False, 'error': "Ghostscript did not create the output file"}

    return {
        'success': True,
        'stdout': (completed.stdout or "").strip() or None,
        'stderr': (completed.stderr or "").strip() or None,
    }


def rewrite_with_pypdf(input_path: str, output_path: str) -> None:
    """Lossless rewrite: compress content streams and drop duplicate objects."""
    if not HAS_PYPDF:
        raise ImportError("pypdf library is required for fallback compression")
    reader = PdfReader(input_path)
    if reader.is_encrypted and not reader.decrypt(""):
        raise ValueError("PDF is password-protected")
    writer = PdfWriter(clone_from=reader)
    for page in writer.pages:
        page.compress_content_streams()
    writer.compress_identical_objects(remove_identicals=True, remove_orphans=True)
    with open(output_path, 'wb') as f:
        writer.write(f)


def _file_size(path: str) -> Optional[int]:
    try:
        return os.path.getsize(path)
    except OSError:
        return None


def compress_single_pdf(input_path: str, output_path: str, quality: int, gs_cmd: Optional[str]) -> Dict[str, Any]:
    """
    Compress one PDF with Ghostscript when available, otherwise rewrite it with pypdf.

    Returns:
        FileProcessResult dict: name, ok, in_size, out_size, error, notes
    """
    result = {
        'name': os.path.basename(input_path),
        'ok': False,
        'in_size': _file_size(input_path),
        'out_size': None,
        'error': None,
        'notes': None,
    }

    if gs_cmd:
        try:
            with _staging_dir() as staging:
                staged_in = os.path.join(staging, "in.pdf")
                staged_out = os.path.join(staging, "out.pdf")
                shutil.copyfile(input_path, staged_in)
                gs_result = compress_with_ghostscript(gs_cmd, staged_in, staged_out, quality)
                if gs_result['success']:
                    shutil.copyfile(staged_out, output_path)
                    result['ok'] = True
                    result['notes'] = f"GS:{quality_to_pdf_settings(quality)}"
                else:
                    result['error'] = gs_result['error']
        except OSError as exc:
            result['error'] = str(exc)
    else:
        try:
            rewrite_with_pypdf(input_path, output_path)
            result['ok'] = True
            result['notes'] = 'fallback'
        except Exception as exc:
            result['error'] = str(exc)

    if result['ok']:
        result['out_size'] = _file_size(output_path)
    return result


class CompressOrchestrator:
    """Runs a serial, cancellable compression batch"""

    def __init__(self, ghostscript_finder: Callable[[], Optional[str]] = find_ghostscript):
        self.ghostscript_finder = ghostscript_finder

    @staticmethod
    def new_result() -> Dict[str, Any]:
        return {
            'processed': 0,
            'total': 0,
            'log': [],
            'used': 'none',
            'files': [],
            'canceled': False,
        }

    def compress_files(
        self,
        files: List[str],
        output_folder: str,
        quality: int = DEFAULT_QUALITY,
        progress_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        complete_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, Any]:
        """Compress an explicit list of files (e.g. dropped onto the window)."""
        result = self.new_result()
        try:
            if not files:
                raise ValueError("No files to compress")
            if not output_folder:
                raise ValueError("Output folder is not specified")
            pdfs = [f for f in files if f.lower().endswith('.pdf') and os.path.isfile(f)]
            result['log'].append(f"Received {len(pdfs)} PDF files to compress")
            self._run_batch(pdfs, output_folder, quality, result, progress_callback, cancel_event)
        except Exception as exc:
            result['log'].append(f"compress-files error: {exc}")
        _safe_progress(complete_callback, result)
        return result

    def compress_folder(
        self,
        input_folder: str,
        output_folder: str,
        quality: int = DEFAULT_QUALITY,
        progress_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        complete_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, Any]:
        """Compress every PDF directly inside input_folder (not recursive)."""
        result = self.new_result()
        try:
            if not input_folder or not output_folder:
                raise ValueError("Input and output folders are not specified")
            if not os.path.isdir(input_folder):
                raise ValueError(f"Input folder not found: {input_folder}")
            pdfs = [
                os.path.join(input_folder, name)
                for name in sorted(os.listdir(input_folder))
                if name.lower().endswith('.pdf') and os.path.isfile(os.path.join(input_folder, name))
            ]
            result['log'].append(f"Found {len(pdfs)} PDF files in {input_folder}")
            self._run_batch(pdfs, output_folder, quality, result, progress_callback, cancel_event)
        except Exception as exc:
            result['log'].append(f"compress-pdfs error: {exc}")
        _safe_progress(complete_callback, result)
        return result

    def _run_batch(self, pdfs, output_folder, quality, result, progress_callback, cancel_event) -> None:
        os.makedirs(output_folder, exist_ok=True)
        if cancel_event is not None:
            cancel_event.clear()
        result['total'] = len(pdfs)

        gs_cmd = self.ghostscript_finder()
        if gs_cmd:
            origin = 'bundled' if os.path.isabs(gs_cmd) else 'system'
            result['used'] = f"ghostscript ({origin})"
            result['log'].append(f"[INFO] Using Ghostscript: {gs_cmd}")
        else:
            result['used'] = 'pypdf (fallback)'
            result['log'].append("[WARN] Ghostscript not found, using fallback mode.")

        for position, input_path in enumerate(pdfs):
            if cancel_event is not None and cancel_event.is_set():
                result['canceled'] = True
                result['log'].append("Compression cancelled by user")
                break

            name = os.path.basename(input_path)
            output_path = os.path.join(output_folder, name)
            file_result = compress_single_pdf(input_path, output_path, quality, gs_cmd)

            if file_result['ok']:
                result['processed'] += 1
                if gs_cmd:
                    result['log'].append(f"GS: {name} -> {output_path} ({quality_to_pdf_settings(quality)})")
                else:
                    result['log'].append(f"FB: {name} -> {output_path}")
            else:
                result['log'].append(f"Error {name}: {file_result['error']}")
            result['files'].append(file_result)

            _safe_progress(progress_callback, {
                'index': position + 1,
                'total': result['total'],
                **file_result,
            })

        result['log'].insert(0, f"Compression finished. Engine: {result['used']}")
