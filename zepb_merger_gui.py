"""
ZEPB Merger - GUI Application
Merges notifications into matching ZEPB documents and compresses PDF batches
"""

import tkinter as tk
from tkinter import ttk, filedialog, messagebox
import threading
import os
import platform
import subprocess
from compress_engine import CompressOrchestrator, DEFAULT_QUALITY, quality_to_pdf_settings
from merge_engine import MergeOrchestrator, count_pdf_files_in_folder, path_is_directory
from settings_store import SettingsStore

_LOG_MAX_LINES = 5000
_LOG_TRIM_LINES = 1000


class ZepbMergerGUI:
    def __init__(self, root, settings_store=None):
        self.root = root
        self.root.title("ZEPB Merger v1.0")
        self.root.geometry("900x780")
        self.root.resizable(True, True)

        self.settings_store = settings_store or SettingsStore()

        # Variables
        self.notification_folder = tk.StringVar()
        self.zepb_folder = tk.StringVar()
        self.output_folder = tk.StringVar()
        self.recursive_notifications = tk.BooleanVar(value=False)
        self.recursive_zepb = tk.BooleanVar(value=False)

        self.compress_input_folder = tk.StringVar()
        self.compress_output_folder = tk.StringVar()
        self.quality = tk.IntVar(value=DEFAULT_QUALITY)
        self.quality_label_var = tk.StringVar(value=self._quality_label(DEFAULT_QUALITY))

        self.is_processing = False
        self.merge_cancel_event = threading.Event()
        self.compress_cancel_event = threading.Event()
        self._worker_thread = None

        # Build UI
        self.create_widgets()
        self._load_settings()

        self.root.protocol("WM_DELETE_WINDOW", self._on_window_close)

    def create_widgets(self):
        """Create all UI widgets"""

        header_frame = tk.Frame(self.root, bg='#2E86AB', height=60)
        header_frame.pack(fill=tk.X)
        header_frame.pack_propagate(False)

        tk.Label(
            header_frame,
            text="ZEPB Merger",
            font=('Arial', 18, 'bold'),
            bg='#2E86AB',
            fg='white'
        ).pack(pady=15)

        notebook = ttk.Notebook(self.root)
        notebook.pack(fill=tk.X, padx=20, pady=(10, 0))

        merge_tab = tk.Frame(notebook, padx=10, pady=10)
        compress_tab = tk.Frame(notebook, padx=10, pady=10)
        notebook.add(merge_tab, text="Merge")
        notebook.add(compress_tab, text="Compress")

        self._create_merge_tab(merge_tab)
        self._create_compress_tab(compress_tab)

        bottom_frame = tk.Frame(self.root, padx=20, pady=10)
        bottom_frame.pack(fill=tk.BOTH, expand=True)
        bottom_frame.grid_columnconfigure(0, weight=1)
        bottom_frame.grid_rowconfigure(4, weight=1)

        self.status_label = tk.Label(bottom_frame, text="Status: Ready", fg='#666')
        self.status_label.grid(row=0, column=0, sticky='w', pady=(0, 5))

        self.progress = ttk.Progressbar(bottom_frame, mode='determinate')
        self.progress.grid(row=1, column=0, sticky='ew', pady=(0, 10))

        self.counters_label = tk.Label(bottom_frame, text="Processed: 0   Skipped: 0   Total: 0", fg='#666')
        self.counters_label.grid(row=2, column=0, sticky='w')

        tk.Label(bottom_frame, text="Live Run Log:", font=('Arial', 10, 'bold')).grid(
            row=3, column=0, sticky='w', pady=(8, 4)
        )

        log_frame = tk.Frame(bottom_frame)
        log_frame.grid(row=4, column=0, sticky='nsew')
        log_frame.grid_columnconfigure(0, weight=1)
        log_frame.grid_rowconfigure(0, weight=1)
        self.log_text = tk.Text(log_frame, height=14, wrap='word', state='disabled')
        self.log_text.grid(row=0, column=0, sticky='nsew')
        log_scroll = ttk.Scrollbar(log_frame, orient='vertical', command=self.log_text.yview)
        log_scroll.grid(row=0, column=1, sticky='ns')
        self.log_text.configure(yscrollcommand=log_scroll.set)

    def _folder_row(self, parent, row, label, variable, command):
        tk.Label(parent, text=label, font=('Arial', 10, 'bold')).grid(row=row, column=0, sticky='w', pady=(0, 5))
        frame = tk.Frame(parent)
        frame.grid(row=row + 1, column=0, columnspan=2, sticky='ew', pady=(0, 10))
        tk.Entry(frame, textvariable=variable, width=60, state='readonly').pack(
            side=tk.LEFT, fill=tk.X, expand=True, padx=(0, 10)
        )
        tk.Button(frame, text="Browse...", command=command, width=10).pack(side=tk.RIGHT)
        return frame

    def _create_merge_tab(self, tab):
        tab.grid_columnconfigure(0, weight=1)

        self._folder_row(tab, 0, "Notifications Folder:", self.notification_folder,
                         lambda: self._browse_into(self.notification_folder, "Select Notifications Folder"))
        tk.Checkbutton(tab, text="Include subfolders", variable=self.recursive_notifications).grid(
            row=2, column=0, sticky='w', pady=(0, 10)
        )

        self._folder_row(tab, 3, "ZEPB Folder:", self.zepb_folder,
                         lambda: self._browse_into(self.zepb_folder, "Select ZEPB Folder"))
        tk.Checkbutton(tab, text="Include subfolders", variable=self.recursive_zepb).grid(
            row=5, column=0, sticky='w', pady=(0, 10)
        )

        self._folder_row(tab, 6, "Output Folder:", self.output_folder,
                         lambda: self._browse_into(self.output_folder, "Select Output Folder"))

        button_frame = tk.Frame(tab)
        button_frame.grid(row=8, column=0, columnspan=2, sticky='ew', pady=(5, 0))
        button_frame.grid_columnconfigure(0, weight=3)
        button_frame.grid_columnconfigure(1, weight=1)

        self.merge_button = tk.Button(
            button_frame,
            text="Start Merging",
            command=self.start_merge,
            bg='#2E86AB',
            fg='white',
            font=('Arial', 12, 'bold'),
            height=2,
            cursor='hand2'
        )
        self.merge_button.grid(row=0, column=0, sticky='ew', padx=(0, 8))

        self.merge_cancel_button = tk.Button(
            button_frame,
            text="Cancel",
            command=lambda: self._request_cancel(self.merge_cancel_event, self.merge_cancel_button),
            bg='#dc3545',
            fg='white',
            font=('Arial', 12, 'bold'),
            height=2,
            state='disabled',
        )
        self.merge_cancel_button.grid(row=0, column=1, sticky='ew')

    def _create_compress_tab(self, tab):
        tab.grid_columnconfigure(0, weight=1)

        self._folder_row(tab, 0, "Input Folder:", self.compress_input_folder,
                         lambda: self._browse_into(self.compress_input_folder, "Select Folder With PDFs"))
        self._folder_row(tab, 2, "Output Folder:", self.compress_output_folder,
                         lambda: self._browse_into(self.compress_output_folder, "Select Output Folder"))

        quality_frame = tk.LabelFrame(tab, text="Quality", padx=10, pady=10)
        quality_frame.grid(row=4, column=0, columnspan=2, sticky='ew', pady=(0, 10))
        tk.Scale(
            quality_frame,
            from_=0,
            to=100,
            orient=tk.HORIZONTAL,
            variable=self.quality,
            command=lambda value: self.quality_label_var.set(self._quality_label(int(float(value)))),
            length=400,
        ).pack(side=tk.LEFT)
        tk.Label(quality_frame, textvariable=self.quality_label_var, fg='#666').pack(side=tk.LEFT, padx=(10, 0))

        button_frame = tk.Frame(tab)
        button_frame.grid(row=5, column=0, columnspan=2, sticky='ew')
        button_frame.grid_columnconfigure(0, weight=3)
        button_frame.grid_columnconfigure(1, weight=1)
        button_frame.grid_columnconfigure(2, weight=1)

        self.compress_button = tk.Button(
            button_frame,
            text="Start Compression",
            command=self.start_compress,
            bg='#2E86AB',
            fg='white',
            font=('Arial', 12, 'bold'),
            height=2,
            cursor='hand2'
        )
        self.compress_button.grid(row=0, column=0, sticky='ew', padx=(0, 8))

        self.compress_files_button = tk.Button(
            button_frame,
            text="Compress Files...",
            command=self.start_compress_files,
            font=('Arial', 10),
            height=2,
        )
        self.compress_files_button.grid(row=0, column=1, sticky='ew', padx=(0, 8))

        self.compress_cancel_button = tk.Button(
            button_frame,
            text="Cancel",
            command=lambda: self._request_cancel(self.compress_cancel_event, self.compress_cancel_button),
            bg='#dc3545',
            fg='white',
            font=('Arial', 12, 'bold'),
            height=2,
            state='disabled',
        )
        self.compress_cancel_button.grid(row=0, column=2, sticky='ew')

    @staticmethod
    def _quality_label(value):
        return f"{value}% ({quality_to_pdf_settings(value).lstrip('/')})"

    def _load_settings(self):
        settings = self.settings_store.load()
        for key, variable in self._persisted_variables().items():
            if key in settings:
                try:
                    variable.set(settings[key])
                except tk.TclError:
                    pass
        self.quality_label_var.set(self._quality_label(self.quality.get()))

    def _save_settings(self):
        self.settings_store.save({key: variable.get() for key, variable in self._persisted_variables().items()})

    def _persisted_variables(self):
        return {
            'notification_folder': self.notification_folder,
            'zepb_folder': self.zepb_folder,
            'output_folder': self.output_folder,
            'recursive_notifications': self.recursive_notifications,
            'recursive_zepb': self.recursive_zepb,
            'compress_input_folder': self.compress_input_folder,
            'compress_output_folder': self.compress_output_folder,
            'quality': self.quality,
        }

    def _on_window_close(self):
        """Handle window close (X button). Confirm if a run is in progress."""
        if self.is_processing:
            if not messagebox.askyesno(
                "Run in progress",
                "A run is currently in progress.\n\nCancel it and close?",
            ):
                return
            self.merge_cancel_event.set()
            self.compress_cancel_event.set()
            if self._worker_thread is not None:
                self._worker_thread.join(timeout=5)
        self._save_settings()
        self.root.destroy()

    def _request_cancel(self, cancel_event, button):
        """User clicked a Cancel button."""
        if not self.is_processing:
            return
        cancel_event.set()
        button.config(state='disabled', text='Cancelling...')
        self.status_label.config(text="Status: Cancelling...", fg='#dc3545')
        self._append_log("[INFO] Cancel requested. Waiting for current file to finish...")

    def _browse_into(self, variable, title):
        folder = filedialog.askdirectory(title=title, initialdir=variable.get() or None)
        if folder:
            variable.set(folder)
            if path_is_directory(folder):
                self._append_log(f"{folder}: {count_pdf_files_in_folder(folder)} PDF files")

    def _append_log(self, line):
        self.log_text.config(state='normal')
        self.log_text.insert(tk.END, line + "\n")
        # Trim oldest lines when text gets too large.
        line_count = int(self.log_text.index('end-1c').split('.')[0])
        if line_count > _LOG_MAX_LINES:
            self.log_text.delete('1.0', f'{_LOG_TRIM_LINES + 1}.0')
        self.log_text.see(tk.END)
        self.log_text.config(state='disabled')

    def _reset_live_state(self):
        self.progress.config(value=0, maximum=1)
        self.counters_label.config(text="Processed: 0   Skipped: 0   Total: 0")
        self.log_text.config(state='normal')
        self.log_text.delete("1.0", tk.END)
        self.log_text.config(state='disabled')

    def _set_running(self, running):
        self.is_processing = running
        state = 'disabled' if running else 'normal'
        self.merge_button.config(state=state, text='Processing...' if running else 'Start Merging')
        self.compress_button.config(state=state, text='Processing...' if running else 'Start Compression')
        self.compress_files_button.config(state=state)
        cancel_state = 'normal' if running else 'disabled'
        self.merge_cancel_button.config(state=cancel_state, text='Cancel')
        self.compress_cancel_button.config(state=cancel_state, text='Cancel')

    def _dispatch(self, handler, *args):
        try:
            self.root.after(0, handler, *args)
        except Exception:
            pass  # Window may have been destroyed

    # Merge

    def start_merge(self):
        """Start the merging process"""
        if self.is_processing:
            return

        folders = (self.notification_folder.get(), self.zepb_folder.get(), self.output_folder.get())
        if not all(folders):
            messagebox.showerror("Error", "Please select the notifications, ZEPB and output folders")
            return
        for folder in folders[:2]:
            if not os.path.isdir(folder):
                messagebox.showerror("Error", f"Folder does not exist:\n{folder}")
                return

        self._save_settings()
        self.merge_cancel_event.clear()
        self._set_running(True)
        self.status_label.config(text="Status: Scanning folders...", fg='#2E86AB')
        self._reset_live_state()
        self._append_log("Merge run started.")

        self._worker_thread = threading.Thread(target=self.run_merge, daemon=True)
        self._worker_thread.start()

    def run_merge(self):
        """Run the merge operation (in separate thread)"""
        try:
            orchestrator = MergeOrchestrator()
            orchestrator.merge_documents(
                self.notification_folder.get(),
                self.zepb_folder.get(),
                self.output_folder.get(),
                recursive_notifications=self.recursive_notifications.get(),
                recursive_zepb=self.recursive_zepb.get(),
                progress_callback=lambda payload: self._dispatch(self._handle_merge_progress, payload),
                unmatched_callback=lambda payload: self._dispatch(self._handle_unmatched, payload),
                complete_callback=lambda payload: self._dispatch(self.on_merge_complete, payload),
                cancel_event=self.merge_cancel_event,
            )
        except Exception as e:
            self._dispatch(self.on_run_error, str(e))

    def _handle_merge_progress(self, payload):
        total = max(payload.get('total', 0), 1)
        self.progress.config(maximum=total, value=payload.get('current', 0))
        self.counters_label.config(
            text=f"Processed: {payload.get('processed', 0)}   "
                 f"Skipped: {payload.get('skipped', 0)}   Total: {payload.get('total', 0)}"
        )
        self.status_label.config(text=f"Status: {payload.get('message', '')}", fg='#2E86AB')
        self._append_log(payload.get('message', ''))

    def _handle_unmatched(self, payload):
        unmatched_notifications = payload.get('unmatched_notifications', [])
        unmatched_zepb = payload.get('unmatched_zepb', [])
        if unmatched_notifications:
            self._append_log(f"Notifications without ZEPB: {len(unmatched_notifications)}")
            for item in unmatched_notifications:
                self._append_log(f"  - {item['code']}: {item['file']}")
        if unmatched_zepb:
            self._append_log(f"ZEPB without notification: {len(unmatched_zepb)}")
            for item in unmatched_zepb:
                self._append_log(f"  - {item['code']}: {item['file']}")

    def on_merge_complete(self, result):
        """Called once when the merge run ends, however it ended"""
        self._set_running(False)
        summary = result.get('summary', {})
        was_cancelled = result.get('canceled', False)

        if was_cancelled:
            self.status_label.config(text="Status: Cancelled", fg='#dc3545')
        elif summary.get('errors'):
            self.status_label.config(text="Status: Completed with errors", fg='#dc3545')
        else:
            self.status_label.config(text="Status: Complete!", fg='#28a745')

        registry = result.get('registry')
        if registry:
            self._append_log(f"Registry: {registry}")
        self._append_log("Run cancelled." if was_cancelled else "Run completed.")

        errors_preview = ""
        if summary.get('errors'):
            errors_preview = "Errors:\n" + "\n".join(f"- {e}" for e in summary['errors'][:3]) + "\n\n"

        messagebox.showinfo(
            "Cancelled" if was_cancelled else "Done",
            f"{'Merge cancelled (partial results below).' if was_cancelled else 'Merge complete!'}\n\n"
            f"Notifications: {summary.get('total', 0)}\n"
            f"Merged: {summary.get('processed', 0)}\n"
            f"Skipped: {summary.get('skipped', 0)}\n"
            f"Notifications without ZEPB: {len(result.get('unmatched_notifications', []))}\n"
            f"ZEPB without notification: {len(result.get('unmatched_zepb', []))}\n\n"
            f"Registry:\n{registry or 'not created'}\n\n"
            f"{errors_preview}"
        )
        if summary.get('processed'):
            self._offer_open_folder(self.output_folder.get())

    # Compress

    def start_compress(self):
        """Start compressing the PDFs of the input folder"""
        if self.is_processing:
            return
        if not self.compress_input_folder.get() or not self.compress_output_folder.get():
            messagebox.showerror("Error", "Please select the input and output folders")
            return
        if not os.path.isdir(self.compress_input_folder.get()):
            messagebox.showerror("Error", "Input folder does not exist")
            return
        self._begin_compress(None)

    def start_compress_files(self):
        """Pick individual PDFs and compress them into the output folder"""
        if self.is_processing:
            return
        if not self.compress_output_folder.get():
            messagebox.showerror("Error", "Please select the output folder")
            return
        files = filedialog.askopenfilenames(
            title="Select PDF Files",
            filetypes=[("PDF files", "*.pdf"), ("All files", "*.*")],
        )
        if files:
            self._begin_compress(list(files))

    def _begin_compress(self, files):
        self._save_settings()
        self.compress_cancel_event.clear()
        self._set_running(True)
        self.status_label.config(text="Status: Compressing...", fg='#2E86AB')
        self._reset_live_state()
        self._append_log("Compression run started.")

        self._worker_thread = threading.Thread(target=self.run_compress, args=(files,), daemon=True)
        self._worker_thread.start()

    def run_compress(self, files=None):
        """Run the compression batch (in separate thread); files=None compresses the input folder"""
        try:
            orchestrator = CompressOrchestrator()
            options = dict(
                quality=self.quality.get(),
                progress_callback=lambda payload: self._dispatch(self._handle_compress_progress, payload),
                complete_callback=lambda payload: self._dispatch(self.on_compress_complete, payload),
                cancel_event=self.compress_cancel_event,
            )
            if files is None:
                orchestrator.compress_folder(
                    self.compress_input_folder.get(), self.compress_output_folder.get(), **options
                )
            else:
                orchestrator.compress_files(files, self.compress_output_folder.get(), **options)
        except Exception as e:
            self._dispatch(self.on_run_error, str(e))

    def _handle_compress_progress(self, payload):
        self.progress.config(maximum=max(payload.get('total', 0), 1), value=payload.get('index', 0))
        name = payload.get('name', '')
        if payload.get('ok'):
            in_kb = (payload.get('in_size') or 0) // 1024
            out_kb = (payload.get('out_size') or 0) // 1024
            self._append_log(f"{name}: {in_kb} KB -> {out_kb} KB ({payload.get('notes')})")
        else:
            self._append_log(f"[ERROR] {name}: {payload.get('error')}")
        self.status_label.config(text=f"Status: {payload.get('index')}/{payload.get('total')} {name}", fg='#2E86AB')

    def on_compress_complete(self, result):
        self._set_running(False)
        was_cancelled = result.get('canceled', False)
        self.status_label.config(
            text="Status: Cancelled" if was_cancelled else "Status: Complete!",
            fg='#dc3545' if was_cancelled else '#28a745',
        )
        self.counters_label.config(text=f"Processed: {result.get('processed', 0)}   Total: {result.get('total', 0)}")
        for line in result.get('log', [])[:1]:
            self._append_log(line)
        messagebox.showinfo(
            "Cancelled" if was_cancelled else "Done",
            f"Compressed {result.get('processed', 0)} of {result.get('total', 0)} files.\n"
            f"Engine: {result.get('used')}"
        )
        if result.get('processed'):
            self._offer_open_folder(self.compress_output_folder.get())

    # Shared

    def on_run_error(self, error_msg):
        """Called when a run fails outside the engine's own error handling"""
        self._set_running(False)
        self.status_label.config(text="Status: Error", fg='#dc3545')
        self._append_log(f"[ERROR] {error_msg}")
        display_msg = error_msg if len(error_msg) <= 1000 else error_msg[:1000] + "\n\n... (truncated)"
        messagebox.showerror("Error", f"An error occurred:\n\n{display_msg}")

    def _offer_open_folder(self, folder_path):
        if not messagebox.askyesno("Open Folder", "Would you like to open the output folder?"):
            return
        try:
            if platform.system() == 'Windows':
                os.startfile(folder_path)
            elif platform.system() == 'Darwin':  # macOS
                subprocess.run(['open', folder_path], check=True)
            else:  # Linux and other Unix-like systems
                subprocess.run(['xdg-open', folder_path], check=True)
        except (OSError, FileNotFoundError, subprocess.CalledProcessError):
            messagebox.showwarning("Cannot Open Folder",
                                   f"Output saved to:\n{folder_path}\n\n"
                                   f"Please open manually.")


def main():
    """Main entry point"""
    root = tk.Tk()
    ZepbMergerGUI(root)
    root.mainloop()


if __name__ == "__main__":
    main()
