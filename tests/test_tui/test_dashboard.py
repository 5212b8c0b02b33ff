from __future__ import annotations

import pytest
from textual.widgets import Button, DataTable, Input, Select

from emissor_nfe.models.document import AUTHORIZED, CANCELLED, REJECTED
from emissor_nfe.tui.app import EmissorApp
from emissor_nfe.tui.screens.confirm import ConfirmScreen
from emissor_nfe.tui.screens.dashboard import DashboardScreen
from emissor_nfe.tui.screens.prompt import PromptScreen
from emissor_nfe.utils import registry, sequence

from tests.conftest import CNPJ
from tests.test_tui.conftest import settle


def _text(app, widget_id: str) -> str:
    return app.screen.query_one(f"#{widget_id}").render().plain


@pytest.mark.asyncio
async def test_env_badge_and_banner(tui_workspace):
    app = EmissorApp(env="homologacao")
    async with app.run_test():
        badge = app.screen.query_one("#env-badge", Button)
        assert "HOMOLOGA" in badge.label.plain
        assert app.screen.query_one("#sandbox-banner").display


@pytest.mark.asyncio
async def test_info_cards(tui_workspace):
    app = EmissorApp(env="homologacao")
    async with app.run_test() as pilot:
        await settle(app, pilot)
        assert "LOJA EXEMPLO LTDA" in _text(app, "issuer-info")
        assert "11.222.333/0001-81" in _text(app, "issuer-info")
        assert "válido" in _text(app, "cert-info")
        assert "NFC-e 2: 1" in _text(app, "seq-info")
        assert "NF-e 1: 1" in _text(app, "seq-info")


@pytest.mark.asyncio
async def test_empty_state(tui_workspace):
    app = EmissorApp(env="homologacao")
    async with app.run_test() as pilot:
        await settle(app, pilot)
        assert app.screen.query_one("#empty-state").display
        assert not app.screen.query_one("#documents-table", DataTable).display


@pytest.mark.asyncio
async def test_documents_listed(seeded):
    app = EmissorApp(env="homologacao")
    async with app.run_test() as pilot:
        await settle(app, pilot)
        table = app.screen.query_one("#documents-table", DataTable)
        assert table.row_count == 2
        assert not app.screen.query_one("#empty-state").display
        assert "1 a inutilizar" in _text(app, "seq-info")


@pytest.mark.asyncio
async def test_status_filter(seeded):
    app = EmissorApp(env="homologacao")
    async with app.run_test() as pilot:
        await settle(app, pilot)
        app.screen.query_one("#filter-status", Select).value = REJECTED
        await pilot.pause()
        table = app.screen.query_one("#documents-table", DataTable)
        assert table.row_count == 1
        assert list(table.rows)[0].value == seeded.rejected.id


@pytest.mark.asyncio
async def test_search_by_customer(seeded):
    app = EmissorApp(env="homologacao")
    async with app.run_test() as pilot:
        await settle(app, pilot)
        await pilot.press("slash")
        assert isinstance(app.focused, Input)
        await pilot.press(*"joao")
        await pilot.pause()
        table = app.screen.query_one("#documents-table", DataTable)
        assert table.row_count == 1
        assert list(table.rows)[0].value == seeded.rejected.id


@pytest.mark.asyncio
async def test_key_n_opens_emit(tui_workspace):
    from emissor_nfe.tui.screens.emit import EmitScreen

    app = EmissorApp(env="homologacao")
    async with app.run_test() as pilot:
        await pilot.press("n")
        assert isinstance(app.screen, EmitScreen)


@pytest.mark.asyncio
async def test_toggle_to_production_asks_confirmation(tui_workspace):
    app = EmissorApp(env="homologacao")
    async with app.run_test() as pilot:
        await pilot.press("e")
        assert isinstance(app.screen, ConfirmScreen)
        app.screen.query_one("#btn-confirm", Button).press()
        await settle(app, pilot)

        assert isinstance(app.screen, DashboardScreen)
        assert app.env == "producao"
        assert "PRODUÇÃO" in app.screen.query_one("#env-badge", Button).label.plain
        assert not app.screen.query_one("#sandbox-banner").display


@pytest.mark.asyncio
async def test_toggle_cancelled_keeps_sandbox(tui_workspace):
    app = EmissorApp(env="homologacao")
    async with app.run_test() as pilot:
        await pilot.press("e")
        await pilot.press("escape")
        await pilot.pause()
        assert app.env == "homologacao"


@pytest.mark.asyncio
async def test_cancel_rejected_is_refused(seeded):
    app = EmissorApp(env="homologacao")
    async with app.run_test() as pilot:
        await settle(app, pilot)
        app.screen.query_one("#filter-status", Select).value = REJECTED
        await pilot.pause()
        app.screen.query_one("#documents-table", DataTable).focus()
        await pilot.press("x")
        await pilot.pause()
        assert isinstance(app.screen, DashboardScreen)
        assert registry.get_document(seeded.rejected.id, "homologacao").status == REJECTED


@pytest.mark.asyncio
async def test_cancel_authorized(seeded):
    app = EmissorApp(env="homologacao")
    async with app.run_test() as pilot:
        await settle(app, pilot)
        app.screen.query_one("#filter-status", Select).value = AUTHORIZED
        await pilot.pause()
        app.screen.query_one("#documents-table", DataTable).focus()
        await pilot.press("x")
        assert isinstance(app.screen, PromptScreen)

        app.screen.query_one("#prompt-input", Input).value = "Cliente desistiu da compra"
        app.screen.query_one("#btn-ok", Button).press()
        await settle(app, pilot)

        assert registry.get_document(seeded.authorized.id, "homologacao").status == CANCELLED
        assert seeded.client.count("cancel") == 1


@pytest.mark.asyncio
async def test_cancel_short_justification_stays_open(seeded):
    app = EmissorApp(env="homologacao")
    async with app.run_test() as pilot:
        await settle(app, pilot)
        app.screen.query_one("#filter-status", Select).value = AUTHORIZED
        await pilot.pause()
        app.screen.query_one("#documents-table", DataTable).focus()
        await pilot.press("x")
        app.screen.query_one("#prompt-input", Input).value = "curta"
        app.screen.query_one("#btn-ok", Button).press()
        await pilot.pause()

        assert isinstance(app.screen, PromptScreen)
        assert "minimo de 15" in app.screen.query_one("#error-label").render().plain
        assert seeded.client.count("cancel") == 0


@pytest.mark.asyncio
async def test_void_skipped(seeded):
    app = EmissorApp(env="homologacao")
    async with app.run_test() as pilot:
        await settle(app, pilot)
        await pilot.press("i")
        assert isinstance(app.screen, PromptScreen)
        app.screen.query_one("#prompt-input", Input).value = "Numeração rejeitada pelo autorizador"
        app.screen.query_one("#btn-ok", Button).press()
        await settle(app, pilot)

        assert sequence.list_skipped(CNPJ, "nfce", 2, env="homologacao") == []
        assert seeded.client.count("void") == 1


@pytest.mark.asyncio
async def test_set_next_number(tui_workspace):
    app = EmissorApp(env="homologacao")
    async with app.run_test() as pilot:
        await settle(app, pilot)
        app.screen.query_one("#filter-type", Select).value = "nfce"
        await pilot.pause()
        await pilot.press("s")
        assert isinstance(app.screen, PromptScreen)
        app.screen.query_one("#prompt-input", Input).value = "120"
        app.screen.query_one("#btn-ok", Button).press()
        await settle(app, pilot)

        assert sequence.peek_next(CNPJ, "nfce", 2, env="homologacao") == 120
        assert "NFC-e 2: 120" in _text(app, "seq-info")


@pytest.mark.asyncio
async def test_set_next_number_rejects_zero(tui_workspace):
    app = EmissorApp(env="homologacao")
    async with app.run_test() as pilot:
        await settle(app, pilot)
        app.screen.query_one("#filter-type", Select).value = "nfe"
        await pilot.pause()
        await pilot.press("s")
        app.screen.query_one("#prompt-input", Input).value = "0"
        app.screen.query_one("#btn-ok", Button).press()
        await pilot.pause()

        assert isinstance(app.screen, PromptScreen)
        assert "entre 1 e" in app.screen.query_one("#error-label").render().plain


@pytest.mark.asyncio
async def test_set_next_number_needs_document_type(tui_workspace):
    app = EmissorApp(env="homologacao")
    async with app.run_test() as pilot:
        await settle(app, pilot)
        await pilot.press("s")
        await pilot.pause()

        assert isinstance(app.screen, DashboardScreen)
