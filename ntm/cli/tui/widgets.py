"""Dashboard widgets: pane table and status bar."""

from __future__ import annotations

from rich.text import Text
from textual.widget import Widget
from textual.widgets import DataTable

from ntm.core.models import DisplayState
from ntm.core.panels import RefreshSource, ScanStatus
from ntm.core.view_store import ViewStore

_STATE_STYLES = {
    DisplayState.WORKING: "bold green",
    DisplayState.IDLE: "dim",
    DisplayState.ERROR: "bold red",
    DisplayState.RATE_LIMITED: "bold yellow",
    DisplayState.COMPACTED: "bold magenta",
    DisplayState.UNKNOWN: "dim italic",
}

PANE_COLUMNS = ("#", "Type", "Title", "State", "Context", "Velocity", "Mail")


class PaneTable(DataTable[object]):
    """One row per pane, keyed by pane id so rows survive reordering."""

    DEFAULT_CSS = """
    PaneTable {
        height: 1fr;
    }
    """

    def on_mount(self) -> None:
        self.cursor_type = "row"
        self.add_columns(*PANE_COLUMNS)

    def render_store(self, store: ViewStore) -> None:
        self.clear()
        for pane in store.panes:
            state = store.agents.get(pane.id)
            if state is None:
                cells: list[object] = [str(pane.index), pane.agent_type.short, pane.title or pane.command, "", "", "", ""]
            else:
                ctx = state.context.usage_percent
                cells = [
                    str(pane.index),
                    pane.agent_type.short,
                    pane.title,
                    Text(state.display_state.value, style=_STATE_STYLES[state.display_state]),
                    f"{ctx:.0f}%" if ctx else "-",
                    f"{state.status.token_velocity:.1f}/s" if state.status else "-",
                    store.mail_names.get(pane.id, ""),
                ]
            self.add_row(*cells, key=pane.id)
        if store.panes:
            self.move_cursor(row=store.cursor)


class StatusBar(Widget):
    """Bottom line: counters, badges, pause flag and session errors."""

    DEFAULT_CSS = """
    StatusBar {
        width: 100%;
        height: 1;
        background: $surface;
    }
    """

    def __init__(self, **kwargs: object) -> None:
        super().__init__(**kwargs)  # type: ignore[arg-type]
        self._text = Text("")

    def update_from(self, store: ViewStore, paused: bool) -> None:
        self._text = build_status_text(store, paused)
        self.refresh()

    def render(self) -> Text:
        return self._text


def build_status_text(store: ViewStore, paused: bool) -> Text:
    c = store.counters
    text = Text()
    if store.session_error is not None:
        text.append(f" {store.session_error_hint or store.session_error} ", style="bold white on red")
        text.append(" ")
    text.append(f"{store.session} ", style="bold")
    text.append(f"{c.agent_panes}/{c.total_panes} agents  ")
    for state, count in sorted(c.by_state.items()):
        text.append(f"{state}:{count} ", style=_STATE_STYLES.get(DisplayState(state), ""))
    critical = c.alerts_by_severity.get("critical", 0)
    warning = c.alerts_by_severity.get("warning", 0)
    if critical or warning:
        text.append(f" alerts {critical}!/{warning}", style="red" if critical else "yellow")
    text.append(f"  beads {c.beads}  mail {c.mail}  ckpt {c.checkpoint}")
    scan = store.panel(RefreshSource.SCAN)
    if isinstance(scan, ScanStatus):
        text.append(f"  scan {scan.state.value}")
    if paused:
        text.append("  PAUSED", style="bold yellow")
    return text
