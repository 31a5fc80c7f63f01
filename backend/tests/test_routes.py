"""
HTTP surface tests: guards, status codes and the error envelope.

Services are mocked; the behaviour behind them is covered by the service tests.
"""
from unittest.mock import AsyncMock, MagicMock, patch

from auth import create_access_token
from conftest import make_principal
from services.customer_service import AcceptResult
from utils.errors import ConflictError, NotFoundError

LEAD = {
    "full_name": "Ravi Kumar",
    "phone_number": "9876543210",
    "personal_phone_number": "9123456780",
    "email": "Ravi@Example.com",
    "project_id": "project-1",
    "company_id": "company-1",
}


def mock_customer_service(**methods):
    service = MagicMock()
    for name, result in methods.items():
        setattr(service, name, AsyncMock(**result))
    return patch("routes.customers.CustomerService", return_value=service), service


class TestCustomerRoutes:

    def test_create_returns_201_without_creator_for_users(self, client):
        created = {"customer_id": "lead-1", "status": "New", "createdBy": {"id": "cp-1"}}
        service_patch, service = mock_customer_service(create={"return_value": created})

        with patch("routes.customers.require_auth", new=AsyncMock(return_value=make_principal("channel_partner", "cp-1"))), service_patch:
            response = client.post("/api/v1/customers/create", json=LEAD)

        assert response.status_code == 201
        body = response.json()
        assert body["customer"] == {"customer_id": "lead-1", "status": "New"}
        request = service.create.call_args.args[0]
        assert request.email == "ravi@example.com"

    def test_losing_accept_is_200_with_winner(self, client):
        result = AcceptResult(accepted=False, customer={"customer_id": "lead-1"}, accepted_by="agent-a", accepted_by_name="Asha")
        service_patch, _ = mock_customer_service(accept={"return_value": result})

        with patch("routes.customers.require_auth", new=AsyncMock(return_value=make_principal("agent", "agent-b"))), service_patch:
            response = client.post("/api/v1/customers/lead-1/accept")

        assert response.status_code == 200
        body = response.json()
        assert body["accepted"] is False
        assert body["accepted_by_name"] == "Asha"
        assert body["message"] == "Customer already accepted by Asha"

    def test_domain_error_envelope(self, client):
        service_patch, _ = mock_customer_service(
            decline={"side_effect": ConflictError("Customer already accepted by Asha")}
        )

        with patch("routes.customers.require_auth", new=AsyncMock(return_value=make_principal("agent", "agent-b"))), service_patch:
            response = client.post("/api/v1/customers/lead-1/decline")

        assert response.status_code == 409
        assert response.json() == {"detail": "Customer already accepted by Asha", "error_code": "CONFLICT"}

    def test_not_found_maps_to_404(self, client):
        service_patch, _ = mock_customer_service(get_customer={"side_effect": NotFoundError("Customer not found")})

        with patch("routes.customers.require_auth", new=AsyncMock(return_value=make_principal("admin", "admin-1"))), service_patch:
            response = client.get("/api/v1/customers/missing")

        assert response.status_code == 404
        assert response.json()["error_code"] == "NOT_FOUND"

    def test_invalid_phone_is_422(self, client):
        with patch("routes.customers.require_auth", new=AsyncMock(return_value=make_principal("agent", "agent-a"))):
            response = client.post("/api/v1/customers/create", json={**LEAD, "phone_number": "12345"})

        assert response.status_code == 422
        body = response.json()
        assert "request_id" in body
        assert any("phone_number" in error["loc"] for error in body["detail"])


class TestGuards:

    def test_missing_token_is_401(self, client):
        response = client.get("/api/v1/customers/all")

        assert response.status_code == 401
        assert response.json()["error_code"] == "NOT_AUTHENTICATED"

    def test_garbage_token_is_401(self, client):
        response = client.get("/api/v1/customers/all", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_inactive_account_with_valid_token_is_403(self, client):
        token = create_access_token({"sub": "agent-off", "role": "agent"})
        inactive = make_principal("agent", "agent-off", status="inactive")

        with patch("middleware.PrincipalResolver.resolve", new=AsyncMock(return_value=inactive)):
            response = client.get("/api/v1/customers/all", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 403
        assert response.json()["error_code"] == "FORBIDDEN"

    def test_deleted_account_token_is_401(self, client):
        token = create_access_token({"sub": "gone", "role": "agent"})

        with patch("middleware.PrincipalResolver.resolve", new=AsyncMock(return_value=None)):
            response = client.get("/api/v1/customers/stats", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401

    def test_broadcast_requires_admin(self, client):
        token = create_access_token({"sub": "agent-a", "role": "agent"})

        with patch("middleware.PrincipalResolver.resolve", new=AsyncMock(return_value=make_principal("agent", "agent-a"))):
            response = client.post(
                "/api/v1/admin/customers/lead-1/broadcast",
                json={"company_id": "company-1"},
                headers={"Authorization": f"Bearer {token}"},
            )

        assert response.status_code == 403


class TestPublicLinkRoutes:

    def test_link_redemption_is_rate_limited(self, client):
        with patch("routes.customers.LinkService.check", new=AsyncMock(return_value={"valid": True})):
            statuses = [client.get("/api/v1/customers/register/customer/abc123").status_code for _ in range(21)]

        assert statuses[:20] == [200] * 20
        assert statuses[20] == 429

    def test_health(self, client):
        response = client.get("/api/v1/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
