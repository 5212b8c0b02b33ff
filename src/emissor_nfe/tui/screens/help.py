from __future__ import annotations

from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.screen import ModalScreen
from textual.widgets import Button, RichLog, Static

SHORTCUTS = [
    ("n", "Emitir", "Emitir NF-e/NFC-e para uma venda"),
    ("r", "Reconciliar", "Consultar o autorizador sobre a nota selecionada"),
    ("x", "Cancelar", "Cancelar a nota selecionada"),
    ("d", "Exportar XML", "Copiar o XML autorizado"),
    ("i", "Inutilizar", "Inutilizar números pulados"),
    ("s", "Numeração", "Definir o próximo número do tipo filtrado"),
    ("e", "Ambiente", "Alternar produção/homologação"),
    ("/", "Buscar", "Focar no campo de busca"),
    ("h", "Ajuda", "Esta tela"),
    ("q", "Sair", "Encerrar aplicação"),
]


class HelpScreen(ModalScreen):
    """Shortcuts, document lifecycle and disclaimer."""

    BINDINGS = [
        Binding("escape", "go_back", "Voltar"),
    ]

    def compose(self) -> ComposeResult:
        with Vertical(id="modal-dialog"):
            with Horizontal(id="modal-title-bar"):
                yield Static("Ajuda", id="header-bar")
                yield Button("✕", id="btn-modal-close")
            yield RichLog(id="help-content", wrap=True, markup=True)
            with Horizontal(classes="button-bar"):
                yield Button("✕ Fechar", id="btn-voltar")

    def on_mount(self) -> None:
        log = self.query_one("#help-content", RichLog)

        log.write("[bold]Emissor NF-e[/bold]")
        log.write("")
        log.write(
            "Emissão de NF-e (modelo 55) e NFC-e (modelo 65) a partir de vendas "
            "finalizadas, com assinatura digital e envio ao autorizador da SEFAZ."
        )
        log.write("")

        log.write("[bold]Atalhos de teclado[/bold]")
        log.write("")
        for key, name, desc in SHORTCUTS:
            log.write(f"  [bold cyan]{key}[/bold cyan]  {name:<18} {desc}")
        log.write("")

        log.write("[bold]Situações da nota[/bold]")
        log.write("")
        log.write("  [yellow]na fila[/yellow]      Número reservado, ainda não enviada")
        log.write("  [cyan]enviada[/cyan]      Enviada; resultado ainda não confirmado")
        log.write("  [cyan]processando[/cyan]  Recebida pelo autorizador, aguardando retorno")
        log.write("  [green]autorizada[/green]   Autorizada; XML disponível para exportação")
        log.write("  [red]rejeitada[/red]    Recusada; o número fica pendente de inutilização")
        log.write("  [dim]cancelada[/dim]    Cancelada localmente ou no autorizador")
        log.write("")
        log.write(
            "Notas [cyan]enviadas[/cyan] sem resposta nunca são reenviadas automaticamente: "
            "use [bold cyan]r[/bold cyan] para consultar o autorizador antes de emitir de novo."
        )
        log.write("")

        log.write("[bold yellow]Aviso[/bold yellow]")
        log.write("")
        log.write(
            "Notas emitidas em [bold red]PRODUÇÃO[/bold red] têm validade fiscal. "
            "Em [bold yellow]HOMOLOGAÇÃO[/bold yellow] os documentos levam a marca "
            "SEM VALOR FISCAL. Consulte seu contador para orientação fiscal."
        )

    def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id in ("btn-voltar", "btn-modal-close"):
            self.app.pop_screen()

    def action_go_back(self) -> None:
        self.app.pop_screen()
