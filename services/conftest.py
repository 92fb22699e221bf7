import os
import tempfile

import pytest
from fastapi.testclient import TestClient

os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(tempfile.mkdtemp(prefix="sandbox-"), "sandbox.db")


@pytest.fixture
def payments_client(monkeypatch):
    from services.payments import main, repo

    monkeypatch.delenv("PAYMENTS_API_TOKEN", raising=False)
    repo.Base.metadata.drop_all(repo.engine)
    repo.init_db()
    return TestClient(main.app)


@pytest.fixture
def partner_client(monkeypatch):
    from services.print_partner import main, repo

    monkeypatch.delenv("PARTNER_API_KEY", raising=False)
    repo.Base.metadata.drop_all(repo.engine)
    repo.init_db()
    return TestClient(main.app)
