"""
ZEPB Merger Engine - Core matching and merging logic
Pairs notification PDFs with ZEPB PDFs by document code, merges each pair and
writes a registry of the produced files
"""

import os
import io
import json
import re
import threading
import uuid
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import List, Dict, Optional, Tuple, Any, Callable

# PDF handling
try:
    from pypdf import PdfReader, PdfWriter
    HAS_PYPDF = True
except ImportError:
    HAS_PYPDF = False

# Image handling (for scans saved as images with a .pdf extension)
try:
    from PIL import Image
    HAS_PIL = True
except ImportError:
    HAS_PIL = False

# DOCX handling (registry)
try:
    from docx import Document
    from docx.enum.table import WD_TABLE_ALIGNMENT, WD_CELL_VERTICAL_ALIGNMENT
    from docx.enum.text import WD_PARAGRAPH_ALIGNMENT
    from docx.shared import Cm, Pt, RGBColor
    HAS_DOCX = True
except ImportError:
    HAS_DOCX = False


DOCUMENT_PREFIXES = ('СК', 'УА', 'СППК', 'СПД', 'РВС', 'ПУ', 'П', 'ГЗУ', 'ПТП', 'ТТП', 'НА')

# Suffix appended to every merged output, before the extension.
PROCESSED_SUFFIX = 'с увед'

REJECTS_FOLDER_NAME = 'отказы'

ZEPB_NAME_MARKER = 'зэпб'

REGISTRY_TITLE = 'Реестр переданных файлов посредством выгрузки на Лукойл-диск'

MatchedPair = namedtuple('MatchedPair', ['code', 'notification_path', 'zepb_path'])


class PairMergeError(Exception):
    """Raised when a notification/ZEPB pair cannot be merged."""


def _safe_progress(callback, *args) -> None:
    """Call a progress callback, swallowing exceptions to avoid crashing the merge."""
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        pass


def _stat_mtime(path: str) -> Optional[float]:
    """Return the modification time of ``path`` or None when it cannot be read."""
    try:
        return os.stat(path).st_mtime
    except OSError:
        return None


def _list_directory(path: str) -> List[os.DirEntry]:
    """List a directory sorted by name; an unreadable directory reads as empty."""
    try:
        with os.scandir(path) as entries:
            return sorted(entries, key=lambda entry: entry.name)
    except OSError:
        return []


class NamingConvention:
    """
    Filename rules that decide which document a file belongs to.

    Three operations: extract a raw code, reduce it to its canonical form and
    tell whether a file was already produced by a previous merge run.
    """

    _PROCESSED_PATTERN = re.compile(
        r'(\(.*?(с увед|с уведомл|with notification).*?\)'
        r'|\bс увед\b|\bс уведомл\b|\bwith notification\b|\bобъединен\b|\bprocessed\b)',
        re.IGNORECASE,
    )
    _VERSION_SUFFIX_PATTERN = re.compile(r'\.\d{1,4}$')
    _BARE_NUMBER_PATTERN = re.compile(r"\d+(?:\.\d{1,4})?")
    _OUTPUT_MARKER_PATTERNS = (
        re.compile(r'\s*\(с увед.*?\)\s*$', re.IGNORECASE),
        re.compile(r'\s*с увед.*?$', re.IGNORECASE),
    )

    def __init__(self, prefixes=DOCUMENT_PREFIXES, processed_suffix: str = PROCESSED_SUFFIX):
        # Longest prefixes first so "П" never shadows "ПТП", "ПУ" or "СПД".
        self.prefixes = tuple(sorted(prefixes, key=len, reverse=True))
        self.processed_suffix = processed_suffix
        alternatives = '|'.join(re.escape(prefix) for prefix in self.prefixes)
        self.code_pattern = re.compile(rf'({alternatives})-\d+(?:\.\d{{1,4}})?', re.IGNORECASE)

    def extract_zepb_code(self, path: str) -> Optional[str]:
        """Extract a code from the file name only."""
        match = self.code_pattern.search(os.path.basename(path))
        return match.group(0).upper() if match else None

    def extract_notification_code(self, path: str) -> Optional[str]:
        """
        Extract a code from the file name, falling back to the parent folder.

        A notification scanned as ``СПД/12.pdf`` carries the prefix in the
        folder name and only the number in the file name.
        """
        filename = os.path.basename(path)
        match = self.code_pattern.search(filename)
        if match:
            return match.group(0).upper()

        folder_name = os.path.basename(os.path.dirname(path)).upper()
        if not folder_name:
            return None
        folder_prefix = next((prefix for prefix in self.prefixes if prefix in folder_name), None)
        if folder_prefix is None:
            return None
        number = self._BARE_NUMBER_PATTERN.search(filename)
        if number is None:
            return None
        return f"{folder_prefix}-{number.group(0)}".upper()

    def canonicalize(self, raw_code: Optional[str]) -> Optional[str]:
        """Drop a sub-version suffix: СПД-1245.25 -> СПД-1245."""
        if not raw_code:
            return None
        return self._VERSION_SUFFIX_PATTERN.sub('', str(raw_code)).upper()

    def is_marked_processed(self, filename: str) -> bool:
        return bool(self._PROCESSED_PATTERN.search(filename))

    def output_filename(self, zepb_path: str) -> str:
        """Name of the merged file produced from a ZEPB source."""
        base = os.path.basename(zepb_path)
        stem, ext = os.path.splitext(base)
        if ext.lower() == '.pdf':
            base = stem
        for pattern in self._OUTPUT_MARKER_PATTERNS:
            base = pattern.sub('', base)
        return f"{base} ({self.processed_suffix}).pdf"


def is_pdf_file(full_path: str, name: str) -> bool:
    return full_path.lower().endswith('.pdf')


def is_zepb_pdf_file(full_path: str, name: str) -> bool:
    return full_path.lower().endswith('.pdf') and ZEPB_NAME_MARKER in name.lower()


class DirectoryScanner:
    """Walks a folder tree and builds a code -> file dictionary"""

    def __init__(
        self,
        naming: Optional[NamingConvention] = None,
        rejects_folder_name: str = REJECTS_FOLDER_NAME,
        exclude_paths: Optional[List[str]] = None,
    ):
        self.naming = naming or NamingConvention()
        self.rejects_folder_name = rejects_folder_name.casefold()
        self.excluded = [
            os.path.normcase(os.path.abspath(path))
            for path in (exclude_paths or [])
            if path
        ]

    def _is_excluded(self, candidate_path: str) -> bool:
        candidate = os.path.normcase(os.path.abspath(candidate_path))
        return candidate in self.excluded

    def build_dictionary(
        self,
        root: str,
        recursive: bool,
        file_filter: Callable[[str, str], bool],
        code_extractor: Callable[[str], Optional[str]],
    ) -> Dict[str, str]:
        """
        Build a mapping of canonical code to file path.

        Args:
            root: Folder to scan
            recursive: Descend into subfolders (the rejects folder is never entered)
            file_filter: Predicate called as file_filter(full_path, name)
            code_extractor: Returns a raw code for a full file path, or None

        Returns:
            Dict mapping canonical code to the newest matching file
        """
        dictionary: Dict[str, str] = {}
        self._scan(root, recursive, file_filter, code_extractor, dictionary)
        return dictionary

    def _scan(self, directory, recursive, file_filter, code_extractor, dictionary) -> None:
        for entry in _list_directory(directory):
            full_path = os.path.join(directory, entry.name)

            if entry.is_dir(follow_symlinks=False):
                if entry.name.casefold() == self.rejects_folder_name:
                    continue
                if recursive and not self._is_excluded(full_path):
                    self._scan(full_path, recursive, file_filter, code_extractor, dictionary)
                continue

            if not entry.is_file(follow_symlinks=False):
                continue
            if not file_filter(full_path, entry.name):
                continue
            if self.naming.is_marked_processed(entry.name):
                continue

            code = self.naming.canonicalize(code_extractor(full_path))
            if not code:
                continue

            existing = dictionary.get(code)
            if existing is None:
                dictionary[code] = full_path
                continue

            existing_mtime = _stat_mtime(existing)
            candidate_mtime = _stat_mtime(full_path)
            if existing_mtime is None or candidate_mtime is None:
                continue
            if candidate_mtime > existing_mtime:
                dictionary[code] = full_path

    def build_notification_dictionary(self, root: str, recursive: bool) -> Dict[str, str]:
        return self.build_dictionary(root, recursive, is_pdf_file, self.naming.extract_notification_code)

    def build_zepb_dictionary(self, root: str, recursive: bool) -> Dict[str, str]:
        return self.build_dictionary(root, recursive, is_zepb_pdf_file, self.naming.extract_zepb_code)


def pair_dictionaries(
    insert_dict: Dict[str, str],
    zepb_dict: Dict[str, str],
) -> Tuple[List[MatchedPair], List[Dict[str, str]], List[Dict[str, str]]]:
    """
    Intersect and diff the two dictionaries.

    Returns:
        (matched pairs in notification order, unmatched notifications,
        unmatched ZEPB documents)
    """
    matched = [
        MatchedPair(code, notification_path, zepb_dict[code])
        for code, notification_path in insert_dict.items()
        if code in zepb_dict
    ]
    unmatched_notifications = [
        {'code': code, 'file': os.path.basename(path)}
        for code, path in insert_dict.items()
        if code not in zepb_dict
    ]
    unmatched_zepb = [
        {'code': code, 'file': os.path.basename(path)}
        for code, path in zepb_dict.items()
        if code not in insert_dict
    ]
    return matched, unmatched_notifications, unmatched_zepb


def count_pdf_files_in_folder(folder_path: str) -> int:
    """Recursively count PDF files; any failure counts as zero."""
    if not folder_path or not os.path.isdir(folder_path):
        return 0
    total = 0
    for entry in _list_directory(folder_path):
        if entry.is_file(follow_symlinks=False):
            if entry.name.lower().endswith('.pdf'):
                total += 1
        elif entry.is_dir(follow_symlinks=False):
            total += count_pdf_files_in_folder(entry.path)
    return total


def path_is_directory(path: str) -> bool:
    try:
        return os.path.isdir(path)
    except (OSError, ValueError):
        return False


class PairPDFMerger:
    """Merges one notification PDF and one ZEPB PDF into a single output file"""

    def _load_pages(self, pdf_file: str):
        try:
            reader = PdfReader(pdf_file)
            if reader.is_encrypted:
                # Try to decrypt with empty password (handles "view-only" PDFs)
                if not reader.decrypt(""):
                    raise PairMergeError(f"{os.path.basename(pdf_file)} is password-protected")
            pages = list(reader.pages)
        except PairMergeError:
            raise
        except Exception as exc:
            # Scanners sometimes save a JPEG/PNG/TIFF with a .pdf extension.
            pdf_bytes = self._try_convert_image_to_pdf(pdf_file)
            if not pdf_bytes:
                raise PairMergeError(f"cannot read {os.path.basename(pdf_file)}: {exc}") from exc
            pages = list(PdfReader(io.BytesIO(pdf_bytes)).pages)

        if not pages:
            raise PairMergeError(f"{os.path.basename(pdf_file)} contains no pages")
        return pages

    def _try_convert_image_to_pdf(self, file_path: str) -> Optional[bytes]:
        """
        Attempt to open a file as an image and convert it to PDF bytes.
        Returns PDF bytes on success, or None if the file is not a valid image.
        """
        if not HAS_PIL:
            return None
        try:
            with Image.open(file_path) as img:
                frames = []
                for frame_index in range(getattr(img, 'n_frames', 1)):
                    img.seek(frame_index)
                    frame = img.copy()
                    if frame.mode not in ('RGB', 'L'):
                        frame = frame.convert('RGB')
                    frames.append(frame)
            pdf_bytes = io.BytesIO()
            frames[0].save(pdf_bytes, format='PDF', resolution=150, save_all=True, append_images=frames[1:])
            print(f"    Converted image to PDF: {os.path.basename(file_path)}")
            return pdf_bytes.getvalue()
        except Exception:
            return None

    def merge_pair(self, notification_path: str, zepb_path: str, output_path: str) -> int:
        """
        Write notification pages followed by ZEPB pages to output_path.

        Returns:
            Number of pages written

        Raises:
            PairMergeError: if either source cannot be loaded or the output cannot be written
        """
        if not HAS_PYPDF:
            raise ImportError("pypdf library is required for PDF merging")

        writer = PdfWriter()
        for source in (notification_path, zepb_path):
            for page in self._load_pages(source):
                writer.add_page(page)

        buffer = io.BytesIO()
        writer.write(buffer)
        # The merged file only appears under its final name once fully written.
        partial_path = output_path + '.part'
        try:
            with open(partial_path, 'wb') as f:
                f.write(buffer.getvalue())
            os.replace(partial_path, output_path)
        except OSError as exc:
            try:
                os.remove(partial_path)
            except OSError:
                pass
            raise PairMergeError(f"cannot write {os.path.basename(output_path)}: {exc}") from exc
        return len(writer.pages)


class RegistryGenerator:
    """Writes the DOCX registry listing the files produced by one merge run"""

    def __init__(self, title: str = REGISTRY_TITLE, font_name: str = 'Times New Roman'):
        self.title = title
        self.font_name = font_name

    @staticmethod
    def registry_filename(now: datetime) -> str:
        return f"Реестр от {now.strftime('%d.%m.%Y')}.docx"

    def _add_run(self, paragraph, text: str, bold: bool = False, size: int = 12) -> None:
        run = paragraph.add_run(text)
        run.bold = bold
        run.font.size = Pt(size)
        run.font.name = self.font_name

    def generate(self, output_folder: str, processed_filenames: List[str], now: Optional[datetime] = None) -> Optional[str]:
        """
        Create the registry document.

        Args:
            output_folder: Folder receiving the registry
            processed_filenames: Produced file names, in processing order

        Returns:
            Path of the written registry, or None when there is nothing to list
        """
        if not processed_filenames:
            return None
        if not HAS_DOCX:
            raise ImportError("python-docx library is required for registry generation")

        now = now or datetime.now()
        names = [os.path.splitext(os.path.basename(name))[0] for name in processed_filenames]

        document = Document()
        style = document.styles['Normal']
        style.font.name = self.font_name
        style.font.size = Pt(12)
        style.font.color.rgb = RGBColor(0, 0, 0)

        section = document.sections[0]
        for margin in ('top_margin', 'bottom_margin', 'left_margin', 'right_margin'):
            setattr(section, margin, Cm(1))

        heading = document.add_paragraph()
        heading.alignment = WD_PARAGRAPH_ALIGNMENT.CENTER
        heading.paragraph_format.space_before = Pt(0)
        heading.paragraph_format.space_after = Pt(0)
        self._add_run(heading, self.title, bold=True, size=14)

        document.add_paragraph()

        table = document.add_table(rows=1, cols=2)
        table.style = 'Table Grid'
        table.alignment = WD_TABLE_ALIGNMENT.CENTER
        widths = (Cm(1.0), Cm(17.0))

        def fill_row(cells, values, bold=False):
            for cell, value, width in zip(cells, values, widths):
                cell.width = width
                cell.vertical_alignment = WD_CELL_VERTICAL_ALIGNMENT.CENTER
                paragraph = cell.paragraphs[0]
                paragraph.alignment = WD_PARAGRAPH_ALIGNMENT.CENTER
                self._add_run(paragraph, value, bold=bold)

        fill_row(table.rows[0].cells, ('№', 'Наименование файла'), bold=True)
        for index, name in enumerate(names, start=1):
            fill_row(table.add_row().cells, (str(index), name))

        document.add_paragraph()

        footer = document.add_paragraph()
        footer.alignment = WD_PARAGRAPH_ALIGNMENT.CENTER
        self._add_run(footer, 'Дата формирования реестра: ', bold=True)
        self._add_run(footer, now.strftime('%d.%m.%Y %H:%M'))

        output_file = os.path.join(output_folder, self.registry_filename(now))
        document.save(output_file)
        return output_file


# Context keys holding paths; reduced to the file name in "redacted" mode.
REDACTED_CONTEXT_KEYS = frozenset({"file", "notification", "zepb", "output", "path", "registry"})


def new_run_id() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S") + "_" + uuid.uuid4().hex[:8]


class RunLogger:
    """
    Event log of one merge run.

    Every record is handed to ``event_callback``. When enabled, the record is
    also appended to ``run_<id>.jsonl`` and, as one readable line, to
    ``run_<id>.log`` inside ``logs_dir``.
    """

    def __init__(
        self,
        logs_dir: str,
        run_id: Optional[str] = None,
        enabled: bool = True,
        privacy_mode: str = "redacted",
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        self.run_id = run_id or new_run_id()
        self.privacy_mode = privacy_mode
        self.event_callback = event_callback
        self.jsonl_log_path = os.path.join(logs_dir, f"run_{self.run_id}.jsonl")
        self.text_log_path = os.path.join(logs_dir, f"run_{self.run_id}.log")
        self._sinks = []
        if enabled:
            os.makedirs(logs_dir, exist_ok=True)
            self._sinks = [
                (open(self.jsonl_log_path, "a", encoding="utf-8"), self._as_json),
                (open(self.text_log_path, "a", encoding="utf-8"), self._as_text),
            ]

    @property
    def enabled(self) -> bool:
        return bool(self._sinks)

    def close(self) -> None:
        sinks, self._sinks = self._sinks, []
        for stream, _ in sinks:
            try:
                stream.close()
            except OSError:
                pass

    def _context_value(self, key: str, value):
        if self.privacy_mode == "redacted" and isinstance(value, str) and key.lower() in REDACTED_CONTEXT_KEYS:
            return os.path.basename(value)
        return value

    @staticmethod
    def _as_json(record: Dict[str, Any]) -> str:
        return json.dumps(record, ensure_ascii=False)

    @staticmethod
    def _as_text(record: Dict[str, Any]) -> str:
        line = f"[{record['ts']}] {record['level']} {record['event']}: {record['message']}"
        details = ", ".join(f"{key}={value}" for key, value in sorted(record["context"].items()))
        return f"{line} | {details}" if details else line

    def log(self, level: str, event: str, message: str, **context) -> None:
        record = {
            "ts": datetime.now().isoformat(),
            "run_id": self.run_id,
            "level": level.upper(),
            "event": event,
            "message": message,
            "context": {key: self._context_value(key, value) for key, value in context.items()},
        }
        for stream, render in self._sinks:
            stream.write(render(record) + "\n")
            stream.flush()
        _safe_progress(self.event_callback, record)


class MergeOrchestrator:
    """Coordinates scanning, pairing, merging and the registry for one run"""

    def __init__(
        self,
        naming: Optional[NamingConvention] = None,
        pdf_merger: Optional[PairPDFMerger] = None,
        registry_generator: Optional[RegistryGenerator] = None,
        rejects_folder_name: str = REJECTS_FOLDER_NAME,
        logs_subdir: str = "logs",
        enable_detailed_logging: bool = True,
        log_privacy_mode: str = "redacted",
        parallel_scan: bool = True,
    ):
        self.naming = naming or NamingConvention()
        self.pdf_merger = pdf_merger or PairPDFMerger()
        self.registry_generator = registry_generator or RegistryGenerator()
        self.rejects_folder_name = rejects_folder_name
        self.logs_subdir = logs_subdir
        self.enable_detailed_logging = enable_detailed_logging
        self.log_privacy_mode = log_privacy_mode
        self.parallel_scan = parallel_scan

    @staticmethod
    def new_summary() -> Dict[str, Any]:
        return {
            'processed': 0,
            'skipped': 0,
            'errors': [],
            'log': [],
            'total': 0,
            'canceled': False,
        }

    def _open_run_logger(self, output_folder: str, event_callback) -> RunLogger:
        return RunLogger(
            logs_dir=os.path.join(output_folder, self.logs_subdir),
            enabled=self.enable_detailed_logging,
            privacy_mode=self.log_privacy_mode,
            event_callback=event_callback,
        )

    def build_dictionaries(
        self,
        notification_folder: str,
        zepb_folder: str,
        recursive_notifications: bool = False,
        recursive_zepb: bool = False,
        exclude_paths: Optional[List[str]] = None,
    ) -> Tuple[Dict[str, str], Dict[str, str]]:
        """Scan both sides; the two scans are independent and may run in parallel."""
        scanner = DirectoryScanner(
            naming=self.naming,
            rejects_folder_name=self.rejects_folder_name,
            exclude_paths=exclude_paths,
        )
        if not self.parallel_scan:
            return (
                scanner.build_notification_dictionary(notification_folder, recursive_notifications),
                scanner.build_zepb_dictionary(zepb_folder, recursive_zepb),
            )
        with ThreadPoolExecutor(max_workers=2) as executor:
            insert_future = executor.submit(
                scanner.build_notification_dictionary, notification_folder, recursive_notifications
            )
            zepb_future = executor.submit(scanner.build_zepb_dictionary, zepb_folder, recursive_zepb)
            return insert_future.result(), zepb_future.result()

    def merge_documents(
        self,
        notification_folder: str,
        zepb_folder: str,
        output_folder: str,
        recursive_notifications: bool = False,
        recursive_zepb: bool = False,
        progress_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        unmatched_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        complete_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, Any]:
        """
        Main entry point for a merge run

        Args:
            notification_folder: Folder with notification PDFs
            zepb_folder: Folder with ZEPB PDFs
            output_folder: Folder receiving merged PDFs and the registry
            progress_callback: Called with a progress dict after every pair
            unmatched_callback: Called once with the unmatched lists before merging
            complete_callback: Called once with the final result, however the run ends
            event_callback: Receives every run log record
            cancel_event: threading.Event; set to request graceful cancellation

        Returns:
            Dict with summary, registry path, unmatched lists and canceled flag
        """
        summary = self.new_summary()
        result = {
            'summary': summary,
            'registry': None,
            'unmatched_notifications': [],
            'unmatched_zepb': [],
            'canceled': False,
        }

        if not notification_folder or not zepb_folder or not output_folder:
            msg = "Merge error: folders are not specified"
            summary['errors'].append(msg)
            summary['log'].append(msg)
            guard_logger = RunLogger(logs_dir=output_folder or "", enabled=False, event_callback=event_callback)
            guard_logger.log("error", "run_invalid_config", msg)
            _safe_progress(complete_callback, result)
            return result

        run_logger = None
        try:
            os.makedirs(output_folder, exist_ok=True)
            if cancel_event is not None:
                cancel_event.clear()
            run_logger = self._open_run_logger(output_folder, event_callback)

            print(f"\nScanning notifications: {notification_folder}")
            print(f"Scanning ZEPB documents: {zepb_folder}")
            run_logger.log(
                "info", "run_start", "Merge run started",
                notification_folder=notification_folder,
                zepb_folder=zepb_folder,
                output_folder=output_folder,
            )

            insert_dict, zepb_dict = self.build_dictionaries(
                notification_folder,
                zepb_folder,
                recursive_notifications,
                recursive_zepb,
                exclude_paths=[output_folder],
            )
            matched, unmatched_notifications, unmatched_zepb = pair_dictionaries(insert_dict, zepb_dict)
            result['unmatched_notifications'] = unmatched_notifications
            result['unmatched_zepb'] = unmatched_zepb
            run_logger.log(
                "info", "scan_complete", "Folder scan complete",
                notifications=len(insert_dict),
                zepb=len(zepb_dict),
                matched=len(matched),
            )
            print(f"Found {len(insert_dict)} notifications, {len(zepb_dict)} ZEPB, {len(matched)} pairs")
            _safe_progress(unmatched_callback, {
                'unmatched_notifications': unmatched_notifications,
                'unmatched_zepb': unmatched_zepb,
            })

            result['registry'] = self.merge_dictionaries(
                insert_dict,
                zepb_dict,
                output_folder,
                summary,
                run_logger,
                progress_callback=progress_callback,
                cancel_event=cancel_event,
            )
        except Exception as exc:
            msg = f"Merge error: {exc}"
            print(msg)
            summary['errors'].append(msg)
            summary['log'].append(msg)
            if run_logger is not None:
                run_logger.log("error", "fatal_error", msg)
        finally:
            if run_logger is not None:
                run_logger.log(
                    "info", "run_complete", "Merge run finished",
                    processed=summary['processed'],
                    skipped=summary['skipped'],
                    errors=len(summary['errors']),
                    canceled=summary['canceled'],
                )
                run_logger.close()

        result['canceled'] = summary['canceled']
        _safe_progress(complete_callback, result)
        return result

    def merge_dictionaries(
        self,
        insert_dict: Dict[str, str],
        zepb_dict: Dict[str, str],
        output_folder: str,
        summary: Dict[str, Any],
        run_logger: Optional[RunLogger] = None,
        progress_callback=None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[str]:
        """
        Merge every notification code against the ZEPB dictionary.

        Mutates ``summary`` in place and returns the registry path (None when
        nothing was produced or the registry could not be written).
        """
        if run_logger is None:
            run_logger = RunLogger(logs_dir=output_folder, run_id="inline", enabled=False)
        os.makedirs(output_folder, exist_ok=True)
        codes = list(insert_dict)
        summary['total'] = len(codes)
        processed_names: List[str] = []

        def report(index: int, message: str, code: Optional[str] = None, output_filename: Optional[str] = None):
            summary['log'].append(message)
            payload = {
                'processed': summary['processed'],
                'skipped': summary['skipped'],
                'total': summary['total'],
                'current': index,
                'message': message,
            }
            if code is not None:
                payload['code'] = code
            if output_filename is not None:
                payload['output_filename'] = output_filename
            _safe_progress(progress_callback, payload)

        for position, code in enumerate(codes):
            index = position + 1
            if cancel_event is not None and cancel_event.is_set():
                summary['canceled'] = True
                run_logger.log("warning", "run_cancelled", "Merge cancelled by user", remaining=len(codes) - position)
                report(index, "Merge cancelled by user")
                break

            notification_path = insert_dict[code]
            zepb_path = zepb_dict.get(code)

            if not zepb_path:
                summary['skipped'] += 1
                msg = f"ZEPB not found for notification: {os.path.basename(notification_path)} ({code})"
                run_logger.log("info", "pair_missing_zepb", msg, code=code, notification=notification_path)
                report(index, msg, code=code)
                continue

            zepb_name = os.path.basename(zepb_path)
            if self.naming.is_marked_processed(zepb_name):
                summary['skipped'] += 1
                msg = f"Skipped already processed ZEPB: {zepb_name}"
                run_logger.log("info", "pair_skipped_processed", msg, code=code, zepb=zepb_path)
                report(index, msg, code=code)
                continue

            output_filename = self.naming.output_filename(zepb_path)
            output_path = os.path.join(output_folder, output_filename)
            try:
                pages = self.pdf_merger.merge_pair(notification_path, zepb_path, output_path)
            except Exception as exc:
                summary['skipped'] += 1
                msg = f"Error merging code {code}: {exc}"
                summary['errors'].append(msg)
                run_logger.log(
                    "error", "pair_merge_failed", msg,
                    code=code, notification=notification_path, zepb=zepb_path, error=str(exc),
                )
                report(index, msg, code=code)
                continue

            summary['processed'] += 1
            processed_names.append(output_filename)
            msg = f"Merged: {output_filename}"
            print(f"    Created: {output_filename} ({pages} pages)")
            run_logger.log("info", "pair_merged", msg, code=code, output=output_path, pages=pages)
            report(index, msg, code=code, output_filename=output_filename)

        if not processed_names:
            return None

        try:
            registry_path = self.registry_generator.generate(output_folder, processed_names)
        except Exception as exc:
            msg = f"Could not create registry: {exc}"
            summary['log'].append(msg)
            run_logger.log("warning", "registry_failed", msg, error=str(exc))
            return None

        if registry_path:
            msg = f"Registry created: {os.path.basename(registry_path)}"
            summary['log'].append(msg)
            run_logger.log("info", "registry_written", msg, registry=registry_path, entries=len(processed_names))
        return registry_path
