from __future__ import annotations

from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.screen import ModalScreen
from textual.widgets import Button, Label, Static


class ConfirmScreen(ModalScreen[bool]):
    """Yes/no dialog for actions with fiscal consequences. Dismisses with True on confirm."""

    DEFAULT_CSS = """
    ConfirmScreen {
        align: center middle;
        background: $surface 80%;
    }
    #confirm-dialog {
        width: 64;
        height: auto;
        max-height: 20;
        background: $surface;
        border: thick $warning;
        padding: 1 2;
    }
    #confirm-dialog.danger {
        border: thick $error;
    }
    #confirm-title {
        text-style: bold;
        margin-bottom: 1;
    }
    #confirm-dialog Horizontal {
        height: 3;
        align-horizontal: right;
        margin-top: 1;
    }
    #confirm-dialog Horizontal Button {
        margin-left: 1;
    }
    """

    BINDINGS = [
        Binding("escape", "cancel", "Voltar"),
        Binding("q", "cancel", show=False),
    ]

    def __init__(
        self,
        title: str,
        message: str,
        *,
        confirm_label: str = "Confirmar",
        danger: bool = False,
    ) -> None:
        super().__init__()
        self._title = title
        self._message = message
        self._confirm_label = confirm_label
        self._danger = danger

    def compose(self) -> ComposeResult:
        with Vertical(id="confirm-dialog", classes="danger" if self._danger else ""):
            yield Label(self._title, id="confirm-title")
            yield Static(self._message, id="confirm-message")
            with Horizontal():
                yield Button("✕ Voltar", id="btn-cancel")
                yield Button(
                    f"▶ {self._confirm_label}",
                    id="btn-confirm",
                    variant="error" if self._danger else "warning",
                )

    def on_button_pressed(self, event: Button.Pressed) -> None:
        event.stop()
        self.dismiss(event.button.id == "btn-confirm")

    def action_cancel(self) -> None:
        self.dismiss(False)
