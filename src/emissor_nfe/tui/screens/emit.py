from __future__ import annotations

from textual import work
from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Container, Horizontal, Vertical
from textual.screen import ModalScreen
from textual.widgets import Button, Input, Label, Select, Static

from emissor_nfe.models.document import DOC_LABELS, NFCE, NFE, TaxDocument


class EmitScreen(ModalScreen[TaxDocument | None]):
    """Two-phase screen: form -> result. Dismisses with the recorded document."""

    BINDINGS = [
        Binding("escape", "go_back", "Voltar"),
    ]

    def __init__(self) -> None:
        super().__init__()
        self._document: TaxDocument | None = None

    def compose(self) -> ComposeResult:
        with Vertical(id="modal-dialog"):
            with Horizontal(id="modal-title-bar"):
                yield Static("Emitir nota fiscal", id="header-bar")
                yield Button("✕", id="btn-modal-close")

            with Container(id="form-container"):
                yield Label("Venda", classes="form-label")
                yield Select([], id="sale-select", prompt="Selecione a venda")
                yield Label("Documento", classes="form-label")
                yield Select(
                    [(DOC_LABELS[NFCE], NFCE), (DOC_LABELS[NFE], NFE)],
                    value=NFCE,
                    allow_blank=False,
                    id="doc-type-select",
                )
                yield Label("CPF/CNPJ do cliente (opcional)", classes="form-label")
                yield Input(placeholder="somente dígitos", id="customer-doc")
                yield Label("Nome do cliente", classes="form-label")
                yield Input(placeholder="Consumidor", id="customer-name")
                with Horizontal(classes="button-bar"):
                    yield Button("✕ Fechar", id="btn-form-voltar")
                    yield Button("↑ Emitir", id="btn-emitir", variant="primary")
                yield Label("", id="error-label")

            with Container(id="result-container"):
                yield Label("", id="result-info")
                with Horizontal(classes="button-bar"):
                    yield Button("✕ Fechar", id="btn-result-close")

    def on_mount(self) -> None:
        self._show_phase("form")
        self._load_sales()

    def _show_phase(self, phase: str) -> None:
        self.query_one("#form-container").display = phase == "form"
        self.query_one("#result-container").display = phase == "result"
        if phase == "form":
            self.query_one("#btn-emitir", Button).disabled = False

    @work(thread=True)
    def _load_sales(self) -> None:
        try:
            from emissor_nfe.config import list_sales

            sales = list_sales()
        except Exception:
            sales = []
        self.app.call_from_thread(self._populate_sales, sales)

    def _populate_sales(self, sales: list[str]) -> None:
        self.query_one("#sale-select", Select).set_options([(s, s) for s in sales])

    def on_button_pressed(self, event: Button.Pressed) -> None:
        match event.button.id:
            case "btn-emitir":
                self._do_emit()
            case "btn-form-voltar" | "btn-modal-close":
                self.dismiss(None)
            case "btn-result-close":
                self.dismiss(self._document)

    def _do_emit(self) -> None:
        from emissor_nfe.models.sale import Customer
        from emissor_nfe.utils.validators import validate_cpf_cnpj

        error_label = self.query_one("#error-label", Label)
        error_label.update("")

        sale_sel = self.query_one("#sale-select", Select)
        if sale_sel.value is Select.BLANK:
            error_label.update("Selecione uma venda")
            return
        sale_id = str(sale_sel.value)
        doc_type = str(self.query_one("#doc-type-select", Select).value)

        customer = None
        documento = self.query_one("#customer-doc", Input).value.strip()
        nome = self.query_one("#customer-name", Input).value.strip()
        if documento:
            try:
                documento = validate_cpf_cnpj(documento)
            except ValueError as e:
                error_label.update(str(e))
                return
            customer = Customer(documento=documento, nome=nome or "Consumidor")

        self.query_one("#btn-emitir", Button).disabled = True
        self.notify(f"Emitindo {DOC_LABELS[doc_type]}…", severity="information", timeout=3)
        self._run_emit(sale_id, doc_type, customer)

    @work(thread=True)
    def _run_emit(self, sale_id: str, doc_type: str, customer) -> None:
        from emissor_nfe.services.emission import emit
        from emissor_nfe.services.exceptions import EmissionError, ValidationFailed

        env = self.app.env  # type: ignore[attr-defined]
        try:
            doc = emit(sale_id, doc_type, customer, env=env)
        except ValidationFailed as e:
            lines = "\n".join(f"• {f}: {r}" for f, r in e.problems)
            self.app.call_from_thread(self._on_error, f"Dados inválidos:\n{lines}", None)
        except EmissionError as e:
            self.app.call_from_thread(self._on_error, str(e), getattr(e, "document", None))
        except Exception as e:
            self.app.call_from_thread(self._on_error, f"Erro interno ao emitir: {e}", None)
        else:
            self.app.call_from_thread(self._show_result, doc)

    def _show_result(self, doc: TaxDocument) -> None:
        from emissor_nfe.models.document import AUTHORIZED, STATUS_LABELS
        from emissor_nfe.utils.formatters import format_access_key

        self._document = doc
        lines = [f"{doc.label}: {STATUS_LABELS.get(doc.status, doc.status)}"]
        if doc.access_key:
            lines.append(f"Chave: {format_access_key(doc.access_key)}")
        if doc.protocol:
            lines.append(f"Protocolo: {doc.protocol}")
        if doc.is_sandbox:
            lines.append("[bold yellow]HOMOLOGAÇÃO - SEM VALOR FISCAL[/bold yellow]")
        self.query_one("#result-info", Label).update("\n".join(lines))
        self._show_phase("result")
        if doc.status == AUTHORIZED:
            self.notify(f"{doc.label} autorizada", timeout=5)
        else:
            self.notify(f"{doc.label} aguardando o autorizador", severity="warning", timeout=5)

    def _on_error(self, msg: str, doc: TaxDocument | None) -> None:
        self._document = doc
        self.query_one("#error-label", Label).update(msg)
        self.query_one("#btn-emitir", Button).disabled = False
        self.notify(msg.splitlines()[0], severity="error", timeout=5)

    def action_go_back(self) -> None:
        self.dismiss(self._document)
