from __future__ import annotations

import pytest

from emissor_nfe.services.emission import emit
from emissor_nfe.services.exceptions import AuthorityRejected

from tests.conftest import CPF, FakeTransmissionClient, rejected


@pytest.fixture
def tui_workspace(workspace, monkeypatch):
    """Workspace whose default authority client is scripted, so screens never hit the network."""
    client = FakeTransmissionClient()
    monkeypatch.setattr("emissor_nfe.services.emission._default_client", lambda profile: client)
    workspace.client = client
    workspace.add_sale("venda-2", cliente={"cpf_cnpj": CPF, "nome": "JOAO PEREIRA"})
    return workspace


@pytest.fixture
def seeded(tui_workspace):
    """One authorized NFC-e (venda-1) and one rejected NFC-e (venda-2)."""
    authorized_doc = emit("venda-1", "nfce", client=FakeTransmissionClient())
    with pytest.raises(AuthorityRejected) as exc_info:
        emit("venda-2", "nfce", client=FakeTransmissionClient(submit=[rejected()]))
    tui_workspace.authorized = authorized_doc
    tui_workspace.rejected = exc_info.value.document
    return tui_workspace


async def settle(app, pilot) -> None:
    """Let threaded workers finish and their call_from_thread callbacks run."""
    await pilot.pause()
    await app.workers.wait_for_complete()
    await pilot.pause()
