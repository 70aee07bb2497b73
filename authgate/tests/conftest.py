"""
Shared fixtures: settings, fake provider, auth services and a test app.
"""

from typing import Optional

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient

from authgate.auth import (
    admin_only,
    optional_user,
    require_all_permissions,
    require_permission,
    require_roles,
)
from authgate.auth.context import build_auth_services
from authgate.main import create_app
from authgate.models import SessionCredential
from authgate.tests.utils import FakeEntraProvider, make_settings


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def provider(settings):
    return FakeEntraProvider(settings)


@pytest.fixture
def services(settings, provider):
    return build_auth_services(settings, provider.client())


@pytest.fixture
def app(settings, services):
    """Test application with a few protected routes mounted."""
    app = create_app(settings=settings, services=services)

    @app.get("/admin/ping", dependencies=[Depends(admin_only)])
    async def admin_ping():
        return {"ok": True}

    @app.get("/reports", dependencies=[Depends(require_roles("admin", "analyst"))])
    async def reports():
        return {"reports": []}

    @app.get("/documents")
    async def list_documents(user: SessionCredential = Depends(require_permission("read:documents"))):
        return {"owner": user.sub}

    @app.delete("/documents/{doc_id}")
    async def delete_document(
        doc_id: str,
        user: SessionCredential = Depends(require_all_permissions("read:documents", "delete:documents")),
    ):
        return {"deleted": doc_id}

    @app.get("/whoami")
    async def whoami(user: Optional[SessionCredential] = Depends(optional_user)):
        return {"user": user.sub if user else None}

    return app


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client
