"""Tkinter desktop front end for the AskMe query screen.

The window mirrors the mobile screen: a menu button opening the search
history, a response area with a "Clear Response" action and a search bar.
All state lives in :class:`askme.QuerySession`; this module only renders it
and forwards user actions.
"""

from __future__ import annotations

from typing import Any, Optional

from rich.console import Console

from askme import (
    LOGGER,
    AppConfig,
    AppPaths,
    CompletionClient,
    ConfigurationError,
    MetricsTracker,
    Pending,
    QueryHistory,
    SEARCH_PLACEHOLDER,
    QuerySession,
    SessionState,
    configure_logging,
    describe_state,
)

try:
    import tkinter as tk
    from tkinter import scrolledtext
except ModuleNotFoundError as exc:  # pragma: no cover - depends on environment
    raise RuntimeError(
        "Tkinter is required to run the AskMe desktop client. "
        "Install the Python Tk bindings for your platform."
    ) from exc


CONSOLE = Console()


class HistoryDialog:
    """Modal listing previous queries, newest first."""

    def __init__(self, gui: "AskMeGUI") -> None:
        self._gui = gui
        self._window = tk.Toplevel(gui.root)
        self._window.title("Search History")
        self._window.geometry("420x360")
        self._window.transient(gui.root)
        self._window.protocol("WM_DELETE_WINDOW", self.close)

        tk.Label(self._window, text="Search History", font=("Helvetica", 14, "bold")).pack(
            anchor=tk.W, padx=12, pady=(12, 6)
        )

        entries = gui.session.history_entries()
        if entries:
            self._listbox = tk.Listbox(self._window, font=("Helvetica", 11), activestyle="none")
            for entry in entries:
                self._listbox.insert(tk.END, entry)
            self._listbox.pack(fill=tk.BOTH, expand=True, padx=12)
            self._listbox.bind("<<ListboxSelect>>", self._on_select)
            tk.Button(self._window, text="Clear History", command=self._clear).pack(
                fill=tk.X, padx=12, pady=(8, 0)
            )
        else:
            tk.Label(self._window, text="No search history available", fg="#888888").pack(
                expand=True, padx=12, pady=20
            )

        tk.Button(self._window, text="Close", command=self.close).pack(fill=tk.X, padx=12, pady=12)
        self._window.grab_set()

    def _on_select(self, event: "tk.Event[Any]") -> None:  # pragma: no cover - GUI
        selection = self._listbox.curselection()
        if not selection:
            return
        query = self._gui.session.select_history(self._listbox.get(selection[0]))
        self._gui.set_input(query)
        self.close()

    def _clear(self) -> None:
        self._gui.session.clear_history()
        self.close()

    def close(self) -> None:
        self._window.grab_release()
        self._window.destroy()


class AskMeGUI:
    """Tkinter window rendering a :class:`QuerySession`."""

    def __init__(self, session: QuerySession) -> None:
        self.session = session
        self.root = tk.Tk()
        self.root.title("AskMe")
        self.root.geometry("720x560")
        self.root.protocol("WM_DELETE_WINDOW", self._on_close)

        top_menu = tk.Frame(self.root)
        top_menu.pack(fill=tk.X, padx=16, pady=(16, 0))
        tk.Button(top_menu, text="☰", command=self._open_history).pack(side=tk.LEFT)

        self._response_display = scrolledtext.ScrolledText(
            self.root,
            wrap=tk.WORD,
            font=("Helvetica", 12),
            state=tk.DISABLED,
        )
        self._response_display.tag_configure("info", foreground="#333333", justify=tk.CENTER)
        self._response_display.tag_configure("pending", foreground="#0000ff", justify=tk.CENTER)
        self._response_display.tag_configure("response", foreground="#333333")
        self._response_display.tag_configure("error", foreground="#ff0000", justify=tk.CENTER)
        self._response_display.pack(padx=16, pady=12, fill=tk.BOTH, expand=True)

        self._clear_button = tk.Button(
            self.root, text="Clear Response", command=self.session.clear_result
        )

        search_bar = tk.Frame(self.root, bg="#f0f0f0")
        search_bar.pack(fill=tk.X, padx=16, pady=(0, 8))
        self._input_var = tk.StringVar()
        self._search_entry = tk.Entry(
            search_bar, textvariable=self._input_var, font=("Helvetica", 12)
        )
        self._search_entry.pack(side=tk.LEFT, fill=tk.X, expand=True, padx=10, pady=8)
        self._search_entry.bind("<Return>", self._on_return)
        self._search_entry.bind("<FocusIn>", self._hide_placeholder)
        self._search_entry.bind("<FocusOut>", self._show_placeholder)
        self._placeholder_active = False
        self._show_placeholder()
        self._search_button = tk.Button(search_bar, text="Search", command=self._submit)
        self._search_button.pack(side=tk.LEFT, padx=(0, 10))

        self._status_var = tk.StringVar(value="Ready")
        tk.Label(self.root, textvariable=self._status_var, anchor=tk.W, relief=tk.SUNKEN).pack(
            fill=tk.X, padx=16, pady=(0, 12)
        )

        self.session.add_state_listener(self._on_state_changed)
        self.session.add_completion_listener(self._on_attempt_complete)
        self._render(self.session.state)

    def set_input(self, text: str) -> None:
        self._hide_placeholder()
        self._input_var.set(text)
        self._search_entry.icursor(tk.END)

    def _on_return(self, event: "tk.Event[Any]") -> None:  # pragma: no cover - GUI
        self._submit()

    def _submit(self) -> None:
        self.session.submit(self.current_input())

    def current_input(self) -> str:
        return "" if self._placeholder_active else self._input_var.get()

    # Tk entries have no native hint text; the placeholder is swapped on focus.
    def _show_placeholder(self, event: Optional["tk.Event[Any]"] = None) -> None:
        if self._placeholder_active or self._input_var.get():
            return
        self._placeholder_active = True
        self._search_entry.configure(fg="#888888")
        self._input_var.set(SEARCH_PLACEHOLDER)

    def _hide_placeholder(self, event: Optional["tk.Event[Any]"] = None) -> None:
        if not self._placeholder_active:
            return
        self._placeholder_active = False
        self._input_var.set("")
        self._search_entry.configure(fg="#000000")

    def _open_history(self) -> None:
        HistoryDialog(self)

    # Session callbacks arrive on worker threads; hop onto the Tk loop.
    def _on_state_changed(self, state: SessionState) -> None:
        self.root.after(0, lambda current=state: self._render(current))

    def _on_attempt_complete(self) -> None:
        self.root.after(0, self._reset_input)

    def _reset_input(self) -> None:
        if not self._placeholder_active:
            self._input_var.set("")
        if self.root.focus_get() is not self._search_entry:
            self._show_placeholder()
        snapshot = self.session.metrics_snapshot()
        self._status_var.set(
            f"Ready | Answers: {snapshot['count']} | Failures: {snapshot['failures']} "
            f"| Mean latency: {snapshot['mean']:.2f}s"
        )

    def _render(self, state: SessionState) -> None:
        text, tag = describe_state(state)
        self._response_display.configure(state=tk.NORMAL)
        self._response_display.delete("1.0", tk.END)
        self._response_display.insert(tk.END, text, tag)
        self._response_display.configure(state=tk.DISABLED)

        pending = isinstance(state, Pending)
        self._search_button.configure(state=tk.DISABLED if pending else tk.NORMAL)
        if pending:
            self._status_var.set("Waiting for response...")
        if tag in ("response", "error"):
            self._clear_button.pack(before=self._search_entry.master, pady=(0, 8))
        else:
            self._clear_button.pack_forget()

    def _on_close(self) -> None:
        self.session.shutdown()
        self.root.destroy()

    def run(self) -> None:  # pragma: no cover - GUI loop
        LOGGER.info("Starting GUI loop")
        self.root.mainloop()


# ---------------------------------------------------------------------------
# Application bootstrap
# ---------------------------------------------------------------------------

def build_application(paths: Optional[AppPaths] = None) -> AskMeGUI:
    """Wire configuration, client, session and window together."""

    config = AppConfig.from_env(paths or AppPaths())
    configure_logging(config.log_level)
    if not config.has_credential:
        LOGGER.warning("No API key configured; set GROQ_API_KEY to enable answers")

    metrics = MetricsTracker()
    client = CompletionClient(config)
    session = QuerySession(client, config.api_key, history=QueryHistory(), metrics=metrics)
    return AskMeGUI(session)


def main() -> None:  # pragma: no cover - entry point
    try:
        app = build_application()
    except ConfigurationError as exc:
        CONSOLE.print(f"[bold red]Configuration error:[/bold red] {exc}")
        return
    except Exception as exc:  # pragma: no cover - defensive catch-all
        LOGGER.exception("Fatal error during application startup")
        CONSOLE.print(f"[bold red]Unexpected error:[/bold red] {exc}")
        return

    app.run()


if __name__ == "__main__":  # pragma: no cover - module executed directly
    main()
