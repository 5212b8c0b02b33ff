from __future__ import annotations

from collections.abc import Callable

from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.screen import ModalScreen
from textual.widgets import Button, Input, Label, Static


class PromptScreen(ModalScreen[str | None]):
    """Single-field dialog; dismisses with the (validated) text or None."""

    BINDINGS = [
        Binding("escape", "go_back", "Voltar"),
    ]

    def __init__(
        self,
        title: str,
        label: str,
        *,
        placeholder: str = "",
        value: str = "",
        validator: Callable[[str], str] | None = None,
    ) -> None:
        super().__init__()
        self._title = title
        self._label = label
        self._placeholder = placeholder
        self._value = value
        self._validator = validator

    def compose(self) -> ComposeResult:
        with Vertical(id="modal-dialog"):
            with Horizontal(id="modal-title-bar"):
                yield Static(self._title, id="header-bar")
                yield Button("✕", id="btn-modal-close")
            yield Label(self._label, classes="form-label")
            yield Input(value=self._value, placeholder=self._placeholder, id="prompt-input")
            yield Label("", id="error-label")
            with Horizontal(classes="button-bar"):
                yield Button("✕ Fechar", id="btn-voltar")
                yield Button("▶ Confirmar", id="btn-ok", variant="primary")

    def on_mount(self) -> None:
        self.query_one("#prompt-input", Input).focus()

    def on_input_submitted(self, event: Input.Submitted) -> None:
        self._submit()

    def on_button_pressed(self, event: Button.Pressed) -> None:
        match event.button.id:
            case "btn-ok":
                self._submit()
            case "btn-voltar" | "btn-modal-close":
                self.dismiss(None)

    def _submit(self) -> None:
        text = self.query_one("#prompt-input", Input).value
        if self._validator is not None:
            try:
                text = self._validator(text)
            except ValueError as e:
                self.query_one("#error-label", Label).update(str(e))
                return
        self.dismiss(text)

    def action_go_back(self) -> None:
        self.dismiss(None)
