import json
import os
import unittest
from datetime import date, datetime
from unittest.mock import patch

import azure.functions as func
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import deal_endpoints
import onedrive_endpoints
import records_endpoints
from shared.db import (
    Activity,
    Base,
    Company,
    Deal,
    DealStatus,
    Tenant,
    User,
    UserTenantMembership,
)
from services.auth_context import issue_session_token


class EndpointTests(unittest.TestCase):
    def setUp(self):
        self._old_secret = os.environ.get("AUTH_SESSION_SECRET")
        os.environ["AUTH_SESSION_SECRET"] = "endpoint-test-secret"
        self.engine = create_engine(
            "sqlite://",
            future=True,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        Base.metadata.create_all(bind=self.engine)
        self.Session = sessionmaker(bind=self.engine)
        self.db = self.Session()

        self.tenant = Tenant(name="Acme")
        self.admin = User(email="admin@acme.test", first_name="Ada")
        self.member = User(email="member@acme.test", first_name="Bob")
        self.outsider = User(email="outsider@other.test", first_name="Eve")
        self.db.add_all([self.tenant, self.admin, self.member, self.outsider])
        self.db.flush()
        self.db.add_all(
            [
                UserTenantMembership(user_id=self.admin.id, tenant_id=self.tenant.id, role="admin"),
                UserTenantMembership(user_id=self.member.id, tenant_id=self.tenant.id, role="member"),
            ]
        )
        self.active = DealStatus(tenant_id=self.tenant.id, name="Active", sort_order=1)
        self.negotiating = DealStatus(tenant_id=self.tenant.id, name="Negotiating", sort_order=2)
        self.db.add_all([self.active, self.negotiating])
        self.db.flush()
        self.deal = Deal(tenant_id=self.tenant.id, name="Roof repair", value=5000, deal_status_id=self.active.id)
        self.company = Company(tenant_id=self.tenant.id, name="Old Co", deleted_at=datetime(2026, 3, 1))
        self.db.add_all([self.deal, self.company])
        self.db.commit()

        self._patches = [
            patch.object(module, "SessionLocal", self.Session)
            for module in (onedrive_endpoints, deal_endpoints, records_endpoints)
        ]
        for patcher in self._patches:
            patcher.start()

    def tearDown(self):
        for patcher in self._patches:
            patcher.stop()
        self.db.close()
        if self._old_secret is None:
            os.environ.pop("AUTH_SESSION_SECRET", None)
        else:
            os.environ["AUTH_SESSION_SECRET"] = self._old_secret

    def _request(self, method, url, *, user=None, body=None, params=None, route_params=None, headers=None):
        request_headers = dict(headers or {})
        if user is not None:
            token, _ = issue_session_token(user)
            request_headers["Authorization"] = f"Bearer {token}"
        return func.HttpRequest(
            method=method,
            url=url,
            headers=request_headers,
            params=params or {},
            route_params=route_params or {},
            body=json.dumps(body).encode("utf-8") if body is not None else b"",
        )

    @staticmethod
    def _json(resp):
        return json.loads(resp.get_body().decode("utf-8"))

    def _onedrive_post(self, user, body):
        req = self._request("POST", "/api/onedrive/auth", user=user, body=body)
        return onedrive_endpoints.onedrive_auth(req)

    def test_onedrive_unknown_action_is_rejected(self):
        resp = self._onedrive_post(self.member, {"action": "rotate", "tenant_id": self.tenant.id})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self._json(resp)["error"], "Unknown action: rotate")

    def test_onedrive_actions_need_tenant_id(self):
        for action in ("test", "get_libraries", "set_library"):
            resp = self._onedrive_post(self.member, {"action": action})
            self.assertEqual(resp.status_code, 400, action)
            self.assertEqual(self._json(resp)["error"], "Missing tenant_id")

    def test_onedrive_rejects_non_member_and_anonymous_callers(self):
        resp = self._onedrive_post(self.outsider, {"action": "test", "tenant_id": self.tenant.id})
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(self._json(resp)["error"], "Access denied to this tenant")

        resp = self._onedrive_post(None, {"action": "test", "tenant_id": self.tenant.id})
        self.assertEqual(resp.status_code, 401)

    def test_onedrive_callback_renders_escaped_popup(self):
        req = self._request(
            "GET",
            "/api/onedrive/auth",
            params={"error": "<script>alert(1)</script>"},
        )
        resp = onedrive_endpoints.onedrive_auth(req)

        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.mimetype, "text/html")
        page = resp.get_body().decode("utf-8")
        self.assertIn("window.close();", page)
        self.assertIn("Authentication failed: &lt;script&gt;alert(1)&lt;/script&gt;", page)
        self.assertNotIn("<script>alert(1)", page)

    def _status_change(self, user, deal_id, body):
        req = self._request(
            "POST",
            f"/api/deals/{deal_id}/status",
            user=user,
            body=body,
            route_params={"deal_id": deal_id},
        )
        return deal_endpoints.deal_status_change(req)

    def test_deal_status_change_requires_membership(self):
        resp = self._status_change(self.outsider, self.deal.id, {"new_status_id": self.negotiating.id})
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(self._json(resp)["error"], "Access denied to this tenant")

        check = self.Session()
        self.assertEqual(check.get(Deal, self.deal.id).deal_status_id, self.active.id)
        check.close()

    def test_deal_status_change_by_member(self):
        resp = self._status_change(self.member, self.deal.id, {"new_status_id": self.negotiating.id})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self._json(resp)["status_name"], "Negotiating")

        check = self.Session()
        activity = check.query(Activity).filter_by(deal_id=self.deal.id).one()
        self.assertEqual(activity.type, "note")
        check.close()

    def test_deal_status_change_unknown_deal(self):
        resp = self._status_change(self.member, "missing-deal", {"new_status_id": self.negotiating.id})
        self.assertEqual(resp.status_code, 404)

    def _restore(self, user):
        req = self._request(
            "POST",
            f"/api/records/companies/{self.company.id}/restore",
            user=user,
            headers={"x-tenant-id": self.tenant.id},
            route_params={"entity": "companies", "record_id": self.company.id},
        )
        return records_endpoints.records_restore(req)

    def test_restore_is_admin_only(self):
        resp = self._restore(self.member)
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(self._json(resp)["error"], "Only administrators can restore records")

        resp = self._restore(self.admin)
        self.assertEqual(resp.status_code, 200)
        check = self.Session()
        self.assertIsNone(check.get(Company, self.company.id).deleted_at)
        check.close()

    def test_manual_sweep_reports_counts(self):
        paused = Deal(
            tenant_id=self.tenant.id,
            name="Paused extension",
            value=1000,
            deal_status_id=self.negotiating.id,
            status_resume_date=date(2020, 1, 1),
        )
        self.db.add(paused)
        self.db.commit()

        req = self._request("POST", "/api/deals/check-paused")
        resp = deal_endpoints.check_paused_deals_manual(req)

        self.assertEqual(resp.status_code, 200)
        payload = self._json(resp)
        self.assertTrue(payload["success"])
        self.assertEqual(payload["message"], "Processed 1 deals, resumed 1")
        self.assertEqual(payload["results"]["errors"], [])


if __name__ == "__main__":
    unittest.main()
