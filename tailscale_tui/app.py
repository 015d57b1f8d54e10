import argparse
import asyncio
import locale
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import VerticalScroll
from textual.screen import ModalScreen
from textual.widgets import ContentSwitcher, DataTable, Footer, Static
from textual.widgets.data_table import CellDoesNotExist

from tailscale_tui.actions import (
    EgressCheckRequested,
    PingRequested,
    QuitRequested,
    RefreshRequested,
    SelectCandidate,
    SwitchView,
)
from tailscale_tui.config import ConfigError, Settings
from tailscale_tui.models import VIEW_ORDER, AppState, View
from tailscale_tui.scheduler import TextualScheduler
from tailscale_tui.services.egress import EgressChecker
from tailscale_tui.services.mock import MockTailscaleClient
from tailscale_tui.services.tailscale import TailscaleClient
from tailscale_tui.state import AppStateMachine
from tailscale_tui.views import (
    EXIT_NODE_COLUMNS,
    HELP_TEXT,
    LOCAL_COLUMNS,
    PEER_COLUMNS,
    banner_text,
    diagnostics_lines,
    exit_node_rows,
    footer_text,
    header_text,
    local_rows,
    peer_rows,
)

logger = logging.getLogger(__name__)

VERSION = "0.1.0"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class CustomHeader(Static):
    """Tailnet, device and refresh state on the left, local time on the right."""

    DEFAULT_CSS = """
    CustomHeader {
        dock: top;
        width: 100%;
        background: $boost;
        color: $text;
        height: 1;
    }
    """

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.summary = "Tailscale TUI - No connection"

    def on_mount(self) -> None:
        self.update_clock()
        self.set_interval(1.0, self.update_clock)

    def update_state(self, state: AppState) -> None:
        self.summary = header_text(state)
        self.update_clock()

    def update_clock(self) -> None:
        time_str = datetime.now().strftime("%I:%M:%S %p")
        width = self.size.width
        gap = width - len(self.summary) - len(time_str) - 2
        if gap < 1:
            self.update(Text(self.summary))
            return
        self.update(Text(f" {self.summary}{' ' * gap}{time_str} "))


class StatusBar(Static):
    def set_view(self, view: View) -> None:
        self.update(Text(footer_text(view)))


class NodeTable(DataTable):
    def __init__(self, columns: tuple[str, ...], **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._columns = columns

    def on_mount(self) -> None:
        self._ensure_columns()

    def _ensure_columns(self) -> None:
        # state can arrive before this widget has mounted
        if not self.columns:
            self.add_columns(*self._columns)

    def update_rows(self, rows: list[tuple[str, ...]]) -> None:
        self._ensure_columns()
        self.clear()
        for row in rows:
            self.add_row(*(Text(cell) for cell in row))


class ExitNodeTable(NodeTable):
    """Exit node candidates keyed by node id; keeps the cursor on the same node across refreshes."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(EXIT_NODE_COLUMNS, cursor_type="row", zebra_stripes=True, **kwargs)

    def selected_id(self) -> Optional[str]:
        if self.row_count == 0:
            return None
        try:
            row_key, _ = self.coordinate_to_cell_key(self.cursor_coordinate)
        except CellDoesNotExist:
            return None
        return row_key.value

    def update_candidates(self, rows: list[tuple[str, tuple[str, ...]]]) -> None:
        self._ensure_columns()
        previous_id = self.selected_id()
        previous_row = self.cursor_row
        self.clear()
        if not rows:
            self.add_row(Text("No exit nodes available"), *([""] * (len(EXIT_NODE_COLUMNS) - 1)))
            return
        target = min(previous_row, len(rows) - 1)
        for index, (node_id, cells) in enumerate(rows):
            self.add_row(*(Text(cell) for cell in cells), key=node_id)
            if node_id == previous_id:
                target = index
        self.move_cursor(row=max(target, 0))


class DiagnosticsPanel(VerticalScroll):
    def __init__(self, **kwargs: object) -> None:
        super().__init__(**kwargs)
        self.border_title = "Diagnostics"
        self._content = Static("... loading")

    def compose(self) -> ComposeResult:
        yield self._content

    def update_lines(self, lines: list[str]) -> None:
        self._content.update(Text("\n".join(lines)) if lines else "No notifications yet")
        self.scroll_end(animate=False)


class HelpScreen(ModalScreen):
    BINDINGS = [
        Binding("escape", "close", "Close"),
    ]

    DEFAULT_CSS = """
    HelpScreen {
        align: center middle;
    }
    #help-body {
        width: 64;
        height: auto;
        border: round $accent;
        background: $surface;
        padding: 1 2;
    }
    """

    def compose(self) -> ComposeResult:
        yield Static(Text(HELP_TEXT), id="help-body")

    def action_close(self) -> None:
        self.app.pop_screen()


class TailscaleTuiApp(App):
    TITLE = "Tailscale TUI"

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("ctrl+c", "quit", "Quit", show=False, priority=True),
        Binding("r,f5", "refresh", "Refresh"),
        Binding("1,l", "switch_view('local')", "Local", show=False),
        Binding("2,p", "switch_view('peers')", "Peers", show=False),
        Binding("3,e", "switch_view('exitnodes')", "Exit Nodes"),
        Binding("4,d", "switch_view('diagnostics')", "Diagnostics", show=False),
        Binding("tab", "cycle_view(1)", "Next View", show=False, priority=True),
        Binding("shift+tab", "cycle_view(-1)", "Previous View", show=False, priority=True),
        Binding("space", "select_exit_node", "Toggle", show=False),
        Binding("g", "ping_exit_node", "Ping", show=False),
        Binding("i", "check_egress", "Public IP", show=False),
        Binding("question_mark,h", "help", "Help"),
    ]

    CSS = """
    Screen {
        layout: vertical;
    }
    #banner {
        height: auto;
        background: $error;
        color: $text;
        padding: 0 1;
        display: none;
    }
    #views {
        height: 1fr;
    }
    #views > * {
        height: 1fr;
        border: round $primary;
    }
    StatusBar {
        height: 1;
        background: $panel;
        padding: 0 1;
    }
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        provider: Any = None,
        egress: Optional[EgressChecker] = None,
    ) -> None:
        super().__init__()
        self.settings = settings or Settings()
        if provider is None:
            provider = build_provider(self.settings)
        self.machine = AppStateMachine(
            provider,
            TextualScheduler(self),
            refresh_interval=self.settings.refresh_interval,
            settle_delay=self.settings.settle_delay,
            call_deadline=self.settings.call_deadline,
            egress=egress,
            on_change=self.render_state,
            on_quit=self.exit,
        )
        self.app_state = AppState()

        self.header_bar = CustomHeader()
        self.banner = Static("", id="banner")
        self.local_table = NodeTable(LOCAL_COLUMNS, id="local", show_cursor=False)
        self.peers_table = NodeTable(PEER_COLUMNS, id="peers", cursor_type="row", zebra_stripes=True)
        self.exit_table = ExitNodeTable(id="exitnodes")
        self.diagnostics = DiagnosticsPanel(id="diagnostics")
        self.status_bar = StatusBar()

        self.local_table.border_title = "Local Node"
        self.peers_table.border_title = "Peers"
        self.exit_table.border_title = "Exit Nodes"

    def compose(self) -> ComposeResult:
        yield self.header_bar
        yield self.banner
        with ContentSwitcher(initial=View.LOCAL.value, id="views"):
            yield self.local_table
            yield self.peers_table
            yield self.exit_table
            yield self.diagnostics
        yield self.status_bar
        yield Footer()

    def on_mount(self) -> None:
        self.status_bar.set_view(View.LOCAL)
        self.run_worker(self.machine.run(), name="state-machine", exit_on_error=True)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.machine.post, QuitRequested())
            except (NotImplementedError, RuntimeError, ValueError):
                pass
        try:
            banner = "Starting Tailscale TUI (Mock Mode)..." if self.settings.mock else "Starting Tailscale TUI..."
            self.machine.start(banner)
        except Exception:
            logger.exception("Failed to start application")
            self.exit(return_code=1)

    def on_unmount(self) -> None:
        self.machine.stop()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                pass

    def render_state(self, state: AppState) -> None:
        self.app_state = state
        self.header_bar.update_state(state)
        banner = banner_text(state)
        self.banner.update(Text(banner))
        self.banner.display = bool(banner)
        self.local_table.update_rows(local_rows(state))
        self.peers_table.update_rows(peer_rows(state))
        self.exit_table.update_candidates(exit_node_rows(state))
        self.diagnostics.update_lines(diagnostics_lines(state))
        self.status_bar.set_view(state.current_view)
        switcher = self.query_one("#views", ContentSwitcher)
        if switcher.current != state.current_view.value:
            switcher.current = state.current_view.value
            if state.current_view is View.EXIT_NODES:
                self.exit_table.focus()

    # -- actions ---------------------------------------------------------

    async def action_quit(self) -> None:
        if self.machine.closed:
            self.exit()
            return
        self.machine.post(QuitRequested())

    def action_refresh(self) -> None:
        self.machine.post(RefreshRequested())

    def action_switch_view(self, view: str) -> None:
        self.machine.post(SwitchView(View(view)))

    def action_cycle_view(self, step: int) -> None:
        index = VIEW_ORDER.index(self.app_state.current_view)
        self.machine.post(SwitchView(VIEW_ORDER[(index + step) % len(VIEW_ORDER)]))

    def action_select_exit_node(self) -> None:
        if self.app_state.current_view is not View.EXIT_NODES:
            return
        self._select(self.exit_table.selected_id())

    def action_ping_exit_node(self) -> None:
        if self.app_state.current_view is not View.EXIT_NODES:
            return
        node_id = self.exit_table.selected_id()
        for candidate in self.app_state.exit_nodes:
            if candidate.id == node_id:
                self.machine.post(PingRequested(candidate.hostname or candidate.id))
                return

    def action_check_egress(self) -> None:
        self.machine.post(EgressCheckRequested())

    def action_help(self) -> None:
        if isinstance(self.screen, HelpScreen):
            return
        self.push_screen(HelpScreen())

    def on_data_table_row_selected(self, event: DataTable.RowSelected) -> None:
        if event.data_table is self.exit_table:
            self._select(event.row_key.value)

    def _select(self, node_id: Optional[str]) -> None:
        if node_id:
            self.machine.post(SelectCandidate(node_id))


def build_provider(settings: Settings) -> Any:
    if settings.mock:
        return MockTailscaleClient()
    client = TailscaleClient(settings.tailscale_path, timeout=settings.command_timeout)
    client.check_installed()
    return client


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tailscale-tui",
        description="Tailscale TUI - Terminal User Interface for Tailscale",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=HELP_TEXT.split("\n", 2)[2].rsplit("\n\n", 1)[0],
    )
    parser.add_argument(
        "--refresh-interval",
        type=float,
        metavar="N",
        help="refresh interval in seconds (default: 3)",
    )
    parser.add_argument(
        "--tailscale-path",
        metavar="PATH",
        help="path to the tailscale binary (default: tailscale)",
    )
    parser.add_argument("--mock", action="store_true", help="run against a built-in demo tailnet")
    parser.add_argument("--log-file", metavar="PATH", help="write diagnostic logs to PATH")
    parser.add_argument("--debug", action="store_true", help="log at DEBUG level")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    return parser


def configure_logging(settings: Settings) -> None:
    # the terminal belongs to the TUI, so logs only ever go to a file
    if settings.log_file:
        path = Path(settings.log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(filename=str(path), level=settings.log_level, format=LOG_FORMAT)
    else:
        logging.basicConfig(level=settings.log_level, handlers=[logging.NullHandler()])


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        locale.setlocale(locale.LC_COLLATE, "")
    except locale.Error:
        logger.debug("Unsupported locale, keeping default collation")
    try:
        settings = Settings.from_env().with_overrides(
            refresh_interval=args.refresh_interval,
            tailscale_path=args.tailscale_path,
            mock=True if args.mock else None,
            log_file=args.log_file,
            log_level="DEBUG" if args.debug else None,
        )
        configure_logging(settings)
        provider = build_provider(settings)
    except ConfigError as exc:
        print(f"tailscale-tui: {exc}", file=sys.stderr)
        return 1

    egress = None if settings.mock else EgressChecker()
    app = TailscaleTuiApp(settings, provider=provider, egress=egress)
    try:
        app.run()
    except Exception:
        logger.exception("Dashboard crashed")
        raise
    return app.return_code or 0


def run() -> None:
    sys.exit(main())
