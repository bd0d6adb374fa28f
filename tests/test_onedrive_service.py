import base64
import hashlib
import json
import os
import unittest
from datetime import timedelta
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlsplit

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from shared.db import Base, Tenant, TenantOneDriveSettings, utcnow
from shared.errors import ServiceError
from services.onedrive_service import (
    OneDriveAuthError,
    check_connection,
    decode_state,
    encode_state,
    generate_pkce_pair,
    graph_request,
    handle_callback,
    initialize_auth,
    list_libraries,
    set_library,
)
from utils.token_crypto import decrypt_token, encrypt_token


def _resp(status_code, payload=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload if payload is not None else {}
    resp.text = json.dumps(payload or {})
    return resp


class OneDriveStateTests(unittest.TestCase):
    def test_pkce_pair_uses_s256(self):
        verifier, challenge = generate_pkce_pair()
        self.assertEqual(len(verifier), 86)
        self.assertNotIn("=", verifier)
        expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode("ascii")).digest()).decode("ascii").rstrip("=")
        self.assertEqual(challenge, expected)
        self.assertNotEqual(generate_pkce_pair()[0], verifier)

    def test_state_round_trip(self):
        decoded = decode_state(encode_state("tenant-1"), max_age_seconds=1800)
        self.assertEqual(decoded["tenant_id"], "tenant-1")
        self.assertIn("nonce", decoded)

    def test_state_rejects_garbage_and_missing_tenant(self):
        with self.assertRaises(ServiceError) as garbage:
            decode_state("not-base64!!")
        self.assertIn("Invalid state parameter", garbage.exception.message)

        no_tenant = base64.b64encode(json.dumps({"timestamp": 1}).encode("utf-8")).decode("ascii")
        with self.assertRaises(ServiceError) as missing:
            decode_state(no_tenant)
        self.assertIn("Invalid tenant ID", missing.exception.message)

    def test_state_expires(self):
        with self.assertRaises(ServiceError) as expired:
            decode_state(encode_state("tenant-1", timestamp_ms=0), max_age_seconds=1800)
        self.assertIn("expired", expired.exception.message)


class OneDriveServiceTests(unittest.TestCase):
    def setUp(self):
        self._old_env = {key: os.environ.get(key) for key in ("ONEDRIVE_TOKEN_ENC_KEY", "ONEDRIVE_REDIRECT_URI")}
        os.environ["ONEDRIVE_TOKEN_ENC_KEY"] = "unit-test-key"
        os.environ["ONEDRIVE_REDIRECT_URI"] = "https://api.example.test/api/onedrive/auth"
        self.engine = create_engine("sqlite:///:memory:", future=True)
        Base.metadata.create_all(bind=self.engine)
        Session = sessionmaker(bind=self.engine)
        self.db = Session()
        self.tenant = Tenant(name="Acme")
        self.db.add(self.tenant)
        self.db.commit()

    def tearDown(self):
        self.db.close()
        for key, value in self._old_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def _connected_settings(self, *, expires_in_minutes=60, refresh_token="refresh-1"):
        settings = TenantOneDriveSettings(
            tenant_id=self.tenant.id,
            client_id="client-id",
            client_secret_enc=encrypt_token("client-secret"),
            access_token_enc=encrypt_token("access-1"),
            refresh_token_enc=encrypt_token(refresh_token) if refresh_token else None,
            token_expires_at=utcnow() + timedelta(minutes=expires_in_minutes),
        )
        self.db.add(settings)
        self.db.commit()
        return settings

    def test_initialize_persists_verifier_and_builds_url(self):
        url = initialize_auth(
            self.db,
            tenant_id=self.tenant.id,
            client_id="client-id",
            client_secret="client-secret",
            azure_tenant_id="contoso-directory",
        )
        parts = urlsplit(url)
        query = parse_qs(parts.query)
        self.assertEqual(parts.path, "/contoso-directory/oauth2/v2.0/authorize")
        self.assertEqual(query["client_id"], ["client-id"])
        self.assertEqual(query["code_challenge_method"], ["S256"])
        self.assertEqual(query["redirect_uri"], ["https://api.example.test/api/onedrive/auth"])
        self.assertEqual(decode_state(query["state"][0])["tenant_id"], self.tenant.id)

        settings = self.db.query(TenantOneDriveSettings).filter_by(tenant_id=self.tenant.id).one()
        self.assertTrue(settings.code_verifier)
        self.assertNotEqual(settings.client_secret_enc, "client-secret")
        self.assertEqual(decrypt_token(settings.client_secret_enc), "client-secret")

    def test_initialize_requires_credentials(self):
        with self.assertRaises(ServiceError) as ctx:
            initialize_auth(self.db, tenant_id=self.tenant.id, client_id="", client_secret="x")
        self.assertEqual(ctx.exception.status_code, 400)

    def test_initialize_without_directory_uses_common_authority(self):
        url = initialize_auth(self.db, tenant_id=self.tenant.id, client_id="client-id", client_secret="secret")
        self.assertIn("/common/oauth2/v2.0/authorize", url)

    @patch("services.onedrive_service.requests.get")
    @patch("services.onedrive_service.requests.post")
    def test_callback_stores_tokens_and_provisions_folders(self, mock_post, mock_get):
        initialize_auth(self.db, tenant_id=self.tenant.id, client_id="client-id", client_secret="secret")
        mock_post.side_effect = [
            _resp(200, {"access_token": "access-1", "refresh_token": "refresh-1", "expires_in": 3600}),
            _resp(201, {"id": "folder-customers"}),
            _resp(409, {"error": {"code": "nameAlreadyExists"}}),
            _resp(201, {"id": "folder-deals"}),
        ]
        mock_get.return_value = _resp(200, {"id": "root-1"})

        success, message = handle_callback(
            self.db, {"code": "auth-code", "state": encode_state(self.tenant.id), "error": None}
        )

        self.assertTrue(success)
        self.assertEqual(message, "OneDrive connected successfully!")
        token_call = mock_post.call_args_list[0]
        self.assertEqual(token_call.kwargs["data"]["grant_type"], "authorization_code")
        self.assertTrue(token_call.kwargs["data"]["code_verifier"])
        self.assertEqual(mock_post.call_count, 4)

        settings = self.db.query(TenantOneDriveSettings).filter_by(tenant_id=self.tenant.id).one()
        self.assertIsNone(settings.code_verifier)
        self.assertEqual(settings.root_folder_id, "root-1")
        self.assertEqual(decrypt_token(settings.access_token_enc), "access-1")
        self.assertEqual(decrypt_token(settings.refresh_token_enc), "refresh-1")
        self.assertEqual(json.loads(settings.folder_structure), {"customers": "Customers", "sites": "Sites", "deals": "Deals"})
        self.assertIsNotNone(settings.connected_at)

    @patch("services.onedrive_service.requests.post")
    def test_callback_reports_expired_code(self, mock_post):
        initialize_auth(self.db, tenant_id=self.tenant.id, client_id="client-id", client_secret="secret")
        mock_post.return_value = _resp(
            400, {"error": "invalid_grant", "error_description": "AADSTS70008: The code has expired."}
        )
        success, message = handle_callback(self.db, {"code": "old", "state": encode_state(self.tenant.id)})
        self.assertFalse(success)
        self.assertEqual(message, "Authorization code expired or already used. Please try connecting again.")

    def test_callback_failures_without_network(self):
        self.assertEqual(
            handle_callback(self.db, {"error": "access_denied"}),
            (False, "Authentication failed: access_denied"),
        )
        self.assertEqual(
            handle_callback(self.db, {"code": "c", "state": None}),
            (False, "Missing authorization code or state"),
        )
        self.assertEqual(
            handle_callback(self.db, {"code": "c", "state": encode_state(self.tenant.id)}),
            (False, "Tenant settings not found"),
        )
        self._connected_settings()
        success, message = handle_callback(self.db, {"code": "c", "state": encode_state(self.tenant.id)})
        self.assertFalse(success)
        self.assertIn("code_verifier not found", message)

    @patch("services.onedrive_service.requests.request")
    @patch("services.onedrive_service.requests.post")
    def test_graph_request_refreshes_once_on_401(self, mock_post, mock_request):
        self._connected_settings()
        mock_request.side_effect = [_resp(401), _resp(200, {"name": "OneDrive"})]
        mock_post.return_value = _resp(200, {"access_token": "access-2", "expires_in": 3600})

        resp = graph_request(self.db, self.tenant.id, "GET", "/me/drive")

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(mock_post.call_count, 1)
        self.assertEqual(mock_request.call_count, 2)
        self.assertEqual(mock_request.call_args_list[0].kwargs["headers"]["Authorization"], "Bearer access-1")
        self.assertEqual(mock_request.call_args_list[1].kwargs["headers"]["Authorization"], "Bearer access-2")
        settings = self.db.query(TenantOneDriveSettings).filter_by(tenant_id=self.tenant.id).one()
        self.assertEqual(decrypt_token(settings.access_token_enc), "access-2")
        self.assertEqual(decrypt_token(settings.refresh_token_enc), "refresh-1")

    @patch("services.onedrive_service.requests.request")
    @patch("services.onedrive_service.requests.post")
    def test_graph_request_does_not_retry_twice(self, mock_post, mock_request):
        self._connected_settings()
        mock_request.side_effect = [_resp(401), _resp(401)]
        mock_post.return_value = _resp(200, {"access_token": "access-2", "expires_in": 3600})

        resp = graph_request(self.db, self.tenant.id, "GET", "/me/drive")

        self.assertEqual(resp.status_code, 401)
        self.assertEqual(mock_request.call_count, 2)
        self.assertEqual(mock_post.call_count, 1)

    @patch("services.onedrive_service.requests.request")
    @patch("services.onedrive_service.requests.post")
    def test_graph_request_refresh_failure_raises(self, mock_post, mock_request):
        self._connected_settings()
        mock_request.return_value = _resp(401)
        mock_post.return_value = _resp(400, {"error": "invalid_grant"})

        with self.assertRaises(OneDriveAuthError) as ctx:
            graph_request(self.db, self.tenant.id, "GET", "/me/drive")
        self.assertEqual(ctx.exception.message, "Authentication failed and token refresh unsuccessful")

    @patch("services.onedrive_service.requests.request")
    @patch("services.onedrive_service.requests.post")
    def test_graph_request_refreshes_before_expiry(self, mock_post, mock_request):
        self._connected_settings(expires_in_minutes=2)
        mock_post.return_value = _resp(200, {"access_token": "access-2", "refresh_token": "refresh-2", "expires_in": 3600})
        mock_request.return_value = _resp(200, {})

        graph_request(self.db, self.tenant.id, "GET", "/me/drive", headers={"Prefer": "x"})

        self.assertEqual(mock_post.call_count, 1)
        self.assertEqual(mock_post.call_args.kwargs["data"]["grant_type"], "refresh_token")
        headers = mock_request.call_args.kwargs["headers"]
        self.assertEqual(headers["Authorization"], "Bearer access-2")
        self.assertEqual(headers["Prefer"], "x")
        settings = self.db.query(TenantOneDriveSettings).filter_by(tenant_id=self.tenant.id).one()
        self.assertEqual(decrypt_token(settings.refresh_token_enc), "refresh-2")

    def test_check_connection_without_token(self):
        self.assertEqual(
            check_connection(self.db, self.tenant.id),
            {"success": False, "error": "No valid access token found"},
        )

    @patch("services.onedrive_service.requests.request")
    def test_check_connection_reports_drive(self, mock_request):
        self._connected_settings()
        mock_request.return_value = _resp(200, {"name": "OneDrive", "owner": {"user": {"displayName": "Ada"}}})
        self.assertEqual(
            check_connection(self.db, self.tenant.id),
            {"success": True, "drive_name": "OneDrive", "owner": "Ada"},
        )

    @patch("services.onedrive_service.requests.request")
    def test_list_libraries_puts_personal_drive_first(self, mock_request):
        self._connected_settings()

        def _route(method, url, **kwargs):
            if url.endswith("/sites?search=*"):
                return _resp(200, {"value": [{"id": "site-1", "displayName": "Sales"}]})
            if url.endswith("/me/drive"):
                return _resp(200, {"id": "drive-me", "owner": {"user": {"displayName": "Ada"}}, "webUrl": "u"})
            if url.endswith("/sites/site-1/drives"):
                return _resp(
                    200,
                    {
                        "value": [
                            {"id": "lib-1", "name": "Documents", "driveType": "documentLibrary"},
                            {"id": "other", "name": "Personal", "driveType": "personal"},
                        ]
                    },
                )
            return _resp(404)

        mock_request.side_effect = _route
        libraries = list_libraries(self.db, self.tenant.id)

        self.assertEqual([lib["id"] for lib in libraries], ["drive-me", "lib-1"])
        self.assertEqual(libraries[0]["name"], "Personal OneDrive (Ada)")
        self.assertEqual(libraries[1]["name"], "Sales - Documents")
        self.assertEqual(libraries[1]["siteId"], "site-1")

    @patch("services.onedrive_service.requests.request")
    def test_list_libraries_fails_when_sites_fail(self, mock_request):
        self._connected_settings()
        mock_request.return_value = _resp(403, {"error": {"message": "Forbidden"}})
        with self.assertRaises(ServiceError) as ctx:
            list_libraries(self.db, self.tenant.id)
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertEqual(ctx.exception.message, "Failed to fetch libraries: Failed to fetch sites: Forbidden")

    @patch("services.onedrive_service.requests.request")
    @patch("services.onedrive_service.requests.post")
    def test_list_libraries_reports_refresh_failure_as_server_error(self, mock_post, mock_request):
        self._connected_settings()
        mock_request.return_value = _resp(401)
        mock_post.return_value = _resp(400, {"error": "invalid_grant"})

        with self.assertRaises(ServiceError) as ctx:
            list_libraries(self.db, self.tenant.id)
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertEqual(
            ctx.exception.message,
            "Failed to fetch libraries: Authentication failed and token refresh unsuccessful",
        )

    @patch("services.onedrive_service.requests.request")
    def test_check_connection_handles_non_json_body(self, mock_request):
        self._connected_settings()
        resp = _resp(200)
        resp.json.side_effect = ValueError("Expecting value")
        mock_request.return_value = resp

        result = check_connection(self.db, self.tenant.id)

        self.assertFalse(result["success"])
        self.assertIn("invalid response", result["error"])

    def test_set_library(self):
        self._connected_settings()
        set_library(self.db, self.tenant.id, "lib-1", "Sales - Documents")
        settings = self.db.query(TenantOneDriveSettings).filter_by(tenant_id=self.tenant.id).one()
        self.assertEqual(settings.selected_library_id, "lib-1")
        with self.assertRaises(ServiceError):
            set_library(self.db, self.tenant.id, "", "x")


if __name__ == "__main__":
    unittest.main()
