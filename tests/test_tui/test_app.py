from __future__ import annotations

import pytest

from emissor_nfe.tui.app import EmissorApp


@pytest.mark.asyncio
async def test_app_launches(tui_workspace):
    app = EmissorApp(env="homologacao")
    async with app.run_test():
        assert app.title == "Emissor NF-e"


@pytest.mark.asyncio
async def test_app_default_screen_is_dashboard(tui_workspace):
    from emissor_nfe.tui.screens.dashboard import DashboardScreen

    app = EmissorApp(env="homologacao")
    async with app.run_test():
        assert isinstance(app.screen, DashboardScreen)


@pytest.mark.asyncio
async def test_app_stores_env(tui_workspace):
    app = EmissorApp(env="producao")
    async with app.run_test():
        assert app.env == "producao"


def test_env_from_issuer(tui_workspace):
    assert EmissorApp().env == "homologacao"
