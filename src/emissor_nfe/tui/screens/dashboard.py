from __future__ import annotations

from pathlib import Path

from textual import work
from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.css.query import NoMatches
from textual.events import Key
from textual.screen import Screen
from textual.widgets import Button, DataTable, Footer, Input, Label, Select, Static

from emissor_nfe.models.document import (
    AUTHORIZED,
    CANCELLED,
    DOC_LABELS,
    DOC_TYPES,
    PROCESSING,
    QUEUED,
    REJECTED,
    STATUS_LABELS,
    SUBMITTED,
    TaxDocument,
)

POLL_INTERVAL = 30.0

STATUS_STYLES = {
    QUEUED: "yellow",
    SUBMITTED: "cyan",
    PROCESSING: "cyan",
    AUTHORIZED: "green",
    REJECTED: "red",
    CANCELLED: "dim",
}


class DashboardScreen(Screen):
    """Main screen: environment, issuer status and document history."""

    BINDINGS = [
        Binding("n", "emit", "Emitir", show=False),
        Binding("r", "reconcile", "Reconciliar", show=False),
        Binding("x", "cancel_document", "Cancelar", show=False),
        Binding("d", "export", "Exportar XML", show=False),
        Binding("i", "void_skipped", "Inutilizar"),
        Binding("s", "set_next_number", "Numeração", show=False),
        Binding("e", "toggle_env", "Ambiente"),
        Binding("slash", "focus_search", "Buscar"),
        Binding("h", "help", "Ajuda"),
        Binding("q", "quit", "Sair"),
    ]

    def __init__(self) -> None:
        super().__init__()
        self._documents: list[TaxDocument] = []

    def compose(self) -> ComposeResult:
        env = self.app.env  # type: ignore[attr-defined]

        with Horizontal(id="top-bar"):
            yield Static("Emissor NF-e", id="app-title")
            env_class = "env-homol" if env == "homologacao" else "env-prod"
            yield Button(
                self._env_label(env),
                id="env-badge",
                classes=env_class,
                tooltip="Alternar entre homologação e produção (e)",
            )
        yield Static("HOMOLOGAÇÃO - SEM VALOR FISCAL", id="sandbox-banner")

        with Horizontal(id="info-bar"):
            with Vertical(id="card-issuer", classes="info-card"):
                yield Label("Emitente", classes="card-title")
                yield Label("…", id="issuer-info", classes="card-value")
            with Vertical(id="card-cert", classes="info-card"):
                yield Label("Certificado", classes="card-title")
                yield Label("…", id="cert-info", classes="card-value")
            with Vertical(id="card-seq", classes="info-card"):
                yield Label("Próximos números", classes="card-title")
                yield Label("…", id="seq-info", classes="card-value")

        with Horizontal(id="filter-bar"):
            yield Static("Notas fiscais", id="section-title")
            yield Select(
                [("Todas as situações", "todas")]
                + [(label.capitalize(), status) for status, label in STATUS_LABELS.items()],
                value="todas",
                allow_blank=False,
                id="filter-status",
                tooltip="Filtrar por situação",
            )
            yield Select(
                [("Todos os tipos", "todos")] + [(DOC_LABELS[t], t) for t in DOC_TYPES],
                value="todos",
                allow_blank=False,
                id="filter-type",
                tooltip="Filtrar por tipo de documento",
            )
            yield Input(
                placeholder="Número, chave ou cliente",
                id="filter-search",
                tooltip="Buscar por número, chave de acesso ou nome do cliente (/)",
            )

        with Horizontal(id="action-bar"):
            yield Button("+ Emitir", id="btn-emit", variant="primary", tooltip="Emitir nota para uma venda (n)")
            yield Button("↻ Reconciliar", id="btn-reconcile", tooltip="Consultar o autorizador (r)")
            yield Button("✕ Cancelar", id="btn-cancel", variant="error", tooltip="Cancelar nota (x)")
            yield Button("⇓ Exportar XML", id="btn-export", tooltip="Copiar XML autorizado (d)")

        yield DataTable(id="documents-table", cursor_type="row")
        yield Static(
            "Nenhuma nota fiscal encontrada.\n"
            "Pressione [bold]n[/bold] para emitir a partir de uma venda finalizada.",
            id="empty-state",
        )
        yield Footer()

    def on_mount(self) -> None:
        self._update_env_badge()
        self._refresh_all()
        self.query_one("#documents-table", DataTable).focus()
        self.set_interval(POLL_INTERVAL, self._poll_processing)

    def on_key(self, event: Key) -> None:
        if isinstance(self.focused, Input):
            return
        table = self.query_one("#documents-table", DataTable)
        match event.key:
            case "j":
                table.action_cursor_down()
            case "k":
                table.action_cursor_up()
            case _:
                return
        event.prevent_default()
        event.stop()

    @staticmethod
    def _env_label(env: str) -> str:
        return "⇄ HOMOLOGAÇÃO" if env == "homologacao" else "⇄ PRODUÇÃO"

    def _refresh_all(self) -> None:
        self._load_issuer()
        self._load_certificate()
        self._load_sequence()
        self._load_documents()

    # --- Data loading (threaded) ---

    @work(thread=True)
    def _load_issuer(self) -> None:
        try:
            from emissor_nfe.services.emission import load_profile
            from emissor_nfe.utils.formatters import format_cpf_cnpj

            profile = load_profile(self.app.env)  # type: ignore[attr-defined]
            text = f"{profile.razao_social}\nCNPJ: {format_cpf_cnpj(profile.cnpj)}"
            missing = profile.missing_requirements()
            if missing:
                text += f"\n[red]incompleto: {', '.join(missing)}[/red]"
        except Exception as e:
            text = f"Erro: {e}"
        self.app.call_from_thread(self._update_label, "issuer-info", text)

    @work(thread=True)
    def _load_certificate(self) -> None:
        try:
            from emissor_nfe.config import get_cert_password, get_cert_path, load_issuer
            from emissor_nfe.utils.certificate import validate_certificate

            info = validate_certificate(get_cert_path(load_issuer()), get_cert_password())
            status = "[green]válido[/green]" if info["valid"] else "[red]EXPIRADO[/red]"
            text = f"{status}\nAté {info['not_after']:%d/%m/%Y}"
        except KeyError:
            text = "não configurado"
        except Exception as e:
            text = f"erro - {e}"
        self.app.call_from_thread(self._update_label, "cert-info", text)

    @work(thread=True)
    def _load_sequence(self) -> None:
        try:
            from emissor_nfe.services.emission import load_profile
            from emissor_nfe.utils.sequence import list_skipped, peek_next

            env = self.app.env  # type: ignore[attr-defined]
            profile = load_profile(env)
            parts = []
            for doc_type in DOC_TYPES:
                lane = profile.series_for(doc_type)
                n = peek_next(profile.cnpj, doc_type, lane.serie, env=env, start=lane.proximo_numero)
                skipped = list_skipped(profile.cnpj, doc_type, lane.serie, env=env)
                line = f"{DOC_LABELS[doc_type]} {lane.serie}: {n}"
                if skipped:
                    line += f" [yellow]({len(skipped)} a inutilizar)[/yellow]"
                parts.append(line)
            text = "\n".join(parts)
        except Exception as e:
            text = f"erro - {e}"
        self.app.call_from_thread(self._update_label, "seq-info", text)

    @work(thread=True, exclusive=True, group="documents")
    def _load_documents(self) -> None:
        from emissor_nfe.utils.registry import list_documents

        env = self.app.env  # type: ignore[attr-defined]
        try:
            docs = list_documents(env)
        except Exception as e:
            self.app.call_from_thread(self.notify, f"Erro ao ler notas: {e}", severity="error")
            docs = []
        self.app.call_from_thread(self._set_documents, docs)

    def _set_documents(self, docs: list[TaxDocument]) -> None:
        self._documents = docs
        self._apply_filter()

    # --- Filtering ---

    def _filtered(self) -> list[TaxDocument]:
        docs = self._documents
        status = self.query_one("#filter-status", Select).value
        if status != "todas":
            docs = [d for d in docs if d.status == status]
        doc_type = self.query_one("#filter-type", Select).value
        if doc_type != "todos":
            docs = [d for d in docs if d.doc_type == doc_type]
        needle = self.query_one("#filter-search", Input).value.strip().lower()
        if needle:
            docs = [
                d
                for d in docs
                if needle in str(d.number)
                or needle in (d.access_key or "")
                or needle in (d.customer_name or "").lower()
            ]
        return docs

    def _apply_filter(self) -> None:
        self._populate_table(self._filtered())

    def _populate_table(self, docs: list[TaxDocument]) -> None:
        from emissor_nfe.utils.formatters import format_brl

        table = self.query_one("#documents-table", DataTable)
        table.clear(columns=True)
        table.add_columns("Criada em", "Documento", "Situação", "Cliente", "Valor", "Chave / Motivo")

        for doc in docs:
            style = STATUS_STYLES.get(doc.status, "")
            label = STATUS_LABELS.get(doc.status, doc.status)
            status = f"[{style}]{label}[/{style}]" if style else label
            if doc.is_sandbox:
                status += " [yellow](homologação)[/yellow]"
            if doc.access_key:
                detail = doc.access_key
            elif doc.authority_code:
                detail = f"{doc.authority_code} {doc.authority_message or ''}".strip()
            else:
                detail = ""
            table.add_row(
                (doc.created_at or "")[:16].replace("T", " "),
                doc.label,
                status,
                doc.customer_name or "",
                format_brl(doc.total) if doc.total else "",
                detail,
                key=doc.id,
            )

        has_rows = table.row_count > 0
        table.display = has_rows
        self.query_one("#empty-state", Static).display = not has_rows

    # --- Event handlers ---

    def on_select_changed(self, event: Select.Changed) -> None:
        self._apply_filter()

    def on_input_changed(self, event: Input.Changed) -> None:
        if event.input.id == "filter-search":
            self._apply_filter()

    def on_button_pressed(self, event: Button.Pressed) -> None:
        match event.button.id:
            case "env-badge":
                self.action_toggle_env()
            case "btn-emit":
                self.action_emit()
            case "btn-reconcile":
                self.action_reconcile()
            case "btn-cancel":
                self.action_cancel_document()
            case "btn-export":
                self.action_export()

    def _selected(self) -> TaxDocument | None:
        table = self.query_one("#documents-table", DataTable)
        if table.row_count == 0:
            return None
        row_key, _ = table.coordinate_to_cell_key(table.cursor_coordinate)
        return next((d for d in self._documents if d.id == row_key.value), None)

    def _require_selected(self) -> TaxDocument | None:
        doc = self._selected()
        if doc is None:
            self.notify("Nenhuma nota selecionada", severity="warning", timeout=3)
        return doc

    # --- Helpers ---

    def _update_label(self, label_id: str, text: str) -> None:
        try:
            self.query_one(f"#{label_id}", Label).update(text)
        except NoMatches:
            pass

    def _on_action_done(self, msg: str) -> None:
        self.notify(msg, timeout=4)
        self._load_sequence()
        self._load_documents()

    def _on_action_error(self, msg: str) -> None:
        self.notify(msg, severity="error", timeout=6)
        self._load_sequence()
        self._load_documents()

    # --- Actions ---

    def action_emit(self) -> None:
        from emissor_nfe.tui.screens.emit import EmitScreen

        self.app.push_screen(EmitScreen(), callback=lambda _doc: self._refresh_after_emit())

    def _refresh_after_emit(self) -> None:
        self._load_sequence()
        self._load_documents()

    def action_reconcile(self) -> None:
        doc = self._require_selected()
        if doc is None:
            return
        if doc.status not in (SUBMITTED, PROCESSING):
            self.notify(
                f"{doc.label} está {STATUS_LABELS[doc.status]}; nada a reconciliar",
                severity="warning",
                timeout=3,
            )
            return
        self.notify(f"Consultando {doc.label}…", timeout=3)
        self._run_reconcile(doc.id)

    @work(thread=True)
    def _run_reconcile(self, doc_id: str) -> None:
        from emissor_nfe.services.emission import reconcile

        try:
            doc = reconcile(doc_id, env=self.app.env)  # type: ignore[attr-defined]
        except Exception as e:
            self.app.call_from_thread(self._on_action_error, f"Erro ao reconciliar: {e}")
            return
        self.app.call_from_thread(
            self._on_action_done, f"{doc.label}: {STATUS_LABELS.get(doc.status, doc.status)}"
        )

    def action_cancel_document(self) -> None:
        doc = self._require_selected()
        if doc is None:
            return
        if doc.status == QUEUED:
            from emissor_nfe.tui.screens.confirm import ConfirmScreen

            self.app.push_screen(
                ConfirmScreen(
                    f"Cancelar {doc.label}",
                    "A nota ainda não foi enviada ao autorizador.\nO número será liberado para a próxima emissão.",
                    confirm_label="Cancelar nota",
                ),
                callback=lambda ok: ok and self._run_cancel(doc.id, ""),
            )
            return
        if doc.status != AUTHORIZED:
            self.notify(
                f"{doc.label} não pode ser cancelada na situação {STATUS_LABELS[doc.status]}",
                severity="warning",
                timeout=4,
            )
            return
        from emissor_nfe.tui.screens.prompt import PromptScreen
        from emissor_nfe.utils.validators import validate_justification

        self.app.push_screen(
            PromptScreen(
                f"Cancelar {doc.label}",
                "Justificativa (15 a 255 caracteres)",
                validator=validate_justification,
            ),
            callback=lambda text: text and self._run_cancel(doc.id, text),
        )

    @work(thread=True)
    def _run_cancel(self, doc_id: str, justification: str) -> None:
        from emissor_nfe.services.emission import cancel

        try:
            doc = cancel(doc_id, justification, env=self.app.env)  # type: ignore[attr-defined]
        except Exception as e:
            self.app.call_from_thread(self._on_action_error, f"Erro ao cancelar: {e}")
            return
        self.app.call_from_thread(self._on_action_done, f"{doc.label} cancelada")

    def action_export(self) -> None:
        doc = self._require_selected()
        if doc is None:
            return
        if not doc.xml_path:
            self.notify(f"{doc.label} não possui XML autorizado", severity="warning", timeout=3)
            return
        from emissor_nfe.tui.screens.prompt import PromptScreen

        self.app.push_screen(
            PromptScreen("Exportar XML", "Pasta ou arquivo de destino", value=str(Path.cwd())),
            callback=lambda dest: dest and self._run_export(doc.id, dest),
        )

    @work(thread=True)
    def _run_export(self, doc_id: str, dest: str) -> None:
        from emissor_nfe.services.emission import export_artifact

        try:
            path = export_artifact(doc_id, dest, env=self.app.env)  # type: ignore[attr-defined]
        except Exception as e:
            self.app.call_from_thread(self._on_action_error, f"Erro ao exportar: {e}")
            return
        self.app.call_from_thread(self.notify, f"XML salvo em: {path}", timeout=5)

    def action_void_skipped(self) -> None:
        from emissor_nfe.tui.screens.prompt import PromptScreen
        from emissor_nfe.utils.validators import validate_justification

        self.app.push_screen(
            PromptScreen(
                "Inutilizar números pulados",
                "Justificativa (15 a 255 caracteres)",
                validator=validate_justification,
            ),
            callback=lambda text: text and self._run_void(text),
        )

    @work(thread=True)
    def _run_void(self, justification: str) -> None:
        from emissor_nfe.services.emission import void_skipped

        env = self.app.env  # type: ignore[attr-defined]
        voided: list[str] = []
        try:
            for doc_type in DOC_TYPES:
                for first, last in void_skipped(doc_type, justification, env=env):
                    span = str(first) if first == last else f"{first}-{last}"
                    voided.append(f"{DOC_LABELS[doc_type]} {span}")
        except Exception as e:
            self.app.call_from_thread(self._on_action_error, f"Erro ao inutilizar: {e}")
            return
        msg = "Inutilizados: " + ", ".join(voided) if voided else "Nenhum número pendente de inutilização"
        self.app.call_from_thread(self._on_action_done, msg)

    def action_set_next_number(self) -> None:
        doc_type = self.query_one("#filter-type", Select).value
        if doc_type not in DOC_TYPES:
            self.notify("Escolha NF-e ou NFC-e no filtro de tipo", severity="warning", timeout=4)
            return
        from emissor_nfe.tui.screens.prompt import PromptScreen
        from emissor_nfe.utils.validators import validate_document_number

        self.app.push_screen(
            PromptScreen(
                f"Numeração {DOC_LABELS[doc_type]}",
                "Próximo número a emitir",
                validator=validate_document_number,
            ),
            callback=lambda text: text and self._run_set_next(doc_type, int(text)),
        )

    @work(thread=True)
    def _run_set_next(self, doc_type: str, value: int) -> None:
        from emissor_nfe.services.emission import set_next_number

        try:
            set_next_number(doc_type, value, env=self.app.env)  # type: ignore[attr-defined]
        except Exception as e:
            self.app.call_from_thread(self._on_action_error, f"Erro ao alterar numeração: {e}")
            return
        self.app.call_from_thread(
            self._on_action_done, f"Próxima {DOC_LABELS[doc_type]}: número {value}"
        )

    @work(thread=True, exclusive=True, group="poll")
    def _poll_processing(self) -> None:
        if not any(d.status == PROCESSING for d in self._documents):
            return
        from emissor_nfe.services.emission import poll_processing

        try:
            docs = poll_processing(env=self.app.env)  # type: ignore[attr-defined]
        except Exception as e:
            self.app.call_from_thread(self._on_action_error, f"Erro ao consultar pendentes: {e}")
            return
        settled = [d for d in docs if d.status != PROCESSING]
        if settled:
            self.app.call_from_thread(
                self._on_action_done, f"{len(settled)} nota(s) com retorno do autorizador"
            )

    def action_help(self) -> None:
        from emissor_nfe.tui.screens.help import HelpScreen

        self.app.push_screen(HelpScreen())

    def action_toggle_env(self) -> None:
        if self.app.env == "homologacao":  # type: ignore[attr-defined]
            from emissor_nfe.tui.screens.confirm import ConfirmScreen

            self.app.push_screen(
                ConfirmScreen(
                    "⚠ Ambiente de PRODUÇÃO",
                    "Notas emitidas neste ambiente têm validade\n"
                    "fiscal e só podem ser desfeitas por cancelamento.\n\n"
                    "Deseja continuar?",
                    confirm_label="Usar produção",
                    danger=True,
                ),
                callback=self._on_env_toggle_confirmed,
            )
        else:
            self._switch_env("homologacao")

    def _on_env_toggle_confirmed(self, confirmed: bool | None) -> None:
        if confirmed:
            self._switch_env("producao")

    def _switch_env(self, env: str) -> None:
        self.app.env = env  # type: ignore[attr-defined]
        self._update_env_badge()
        self._refresh_all()

    def _update_env_badge(self) -> None:
        badge = self.query_one("#env-badge", Button)
        is_homol = self.app.env == "homologacao"  # type: ignore[attr-defined]
        badge.label = self._env_label(self.app.env)  # type: ignore[attr-defined]
        badge.set_class(is_homol, "env-homol")
        badge.set_class(not is_homol, "env-prod")
        self.query_one("#sandbox-banner", Static).display = is_homol

    def action_focus_search(self) -> None:
        self.query_one("#filter-search", Input).focus()

    def action_quit(self) -> None:
        self.app.exit()
