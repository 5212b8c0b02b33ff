from __future__ import annotations

from textual.app import App
from textual.binding import Binding


class EmissorApp(App):
    """Operator console for NF-e/NFC-e emission."""

    CSS_PATH = "app.tcss"
    TITLE = "Emissor NF-e"
    ENABLE_COMMAND_PALETTE = False

    BINDINGS = [
        Binding("q", "quit", "Sair", priority=True),
    ]

    def __init__(self, env: str | None = None):
        super().__init__()
        if env is None:
            from emissor_nfe.services.emission import resolve_env

            env = resolve_env()
        self.env = env

    def on_mount(self) -> None:
        from emissor_nfe.tui.screens.dashboard import DashboardScreen

        self.push_screen(DashboardScreen())
