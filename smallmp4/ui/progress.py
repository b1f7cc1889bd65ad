import threading
from typing import Optional
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn, TimeElapsedColumn
from smallmp4.ui.state import UIState


def format_eta(seconds: Optional[float]) -> str:
    if seconds is None:
        return "--:--"
    seconds = int(seconds)
    minutes, secs = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


class ProgressDisplay:
    """Renders UIState as a rich progress bar, refreshed from a background thread."""

    def __init__(self, state: UIState, console: Optional[Console] = None, refresh_rate: float = 0.2):
        self.state = state
        self.console = console or Console(stderr=True)
        self.refresh_rate = refresh_rate
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(bar_width=40),
            TaskProgressColumn(),
            TextColumn("[cyan]ETA {task.fields[eta]}"),
            TimeElapsedColumn(),
            console=self.console,
            transient=False,
        )
        self._task_id = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _description(self) -> str:
        with self.state._lock:
            encoder = self.state.encoder.display_name if self.state.encoder else "..."
            pass_label = f" pass {self.state.pass_number}/2" if self.state.encoder and not self.state.encoder.is_hardware_accelerated else ""
            return f"{encoder}{pass_label} (attempt {max(self.state.attempt, 1)})"

    def refresh(self):
        if self._task_id is None:
            return
        with self.state._lock:
            completed = self.state.progress * 100
            eta = format_eta(self.state.eta_seconds)
        self.progress.update(self._task_id, completed=completed, description=self._description(), eta=eta)
        with self.state._lock:
            messages = list(self.state.messages)
            self.state.messages.clear()
        for message in reversed(messages):
            self.progress.console.print(f"[yellow]{message}")

    def _poll(self):
        while not self._stop_event.is_set():
            self.refresh()
            self._stop_event.wait(self.refresh_rate)

    def start(self):
        self.progress.start()
        self._task_id = self.progress.add_task("Starting", total=100, eta="--:--")
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._poll, daemon=True)
        self._thread.start()

    def stop(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=1.0)
            self._thread = None
        self.refresh()
        self.progress.stop()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
