import os
import sys
import unittest
from unittest import mock


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
HERE = os.path.dirname(os.path.abspath(__file__))
for path in (ROOT, SRC, HERE):
    if path not in sys.path:
        sys.path.insert(0, path)

from fastapi.testclient import TestClient

import app.auth as auth_module
from app.auth import AuthenticationFailed, JwksCache, claims_to_auth_result, jwt_auth_hook
from app.main import create_app
from app.settings import Settings, load_settings
from canonicalize import compute_ontology_hash
from sample_ontology import build_ontology


def _groups(*groups):
    return {"X-Ont-Groups": ",".join(groups)}


class TestApiApp(unittest.TestCase):
    def setUp(self) -> None:
        self.ontology = build_ontology()
        self.settings = Settings(disable_auth=True, env_name="dev")
        self.client = TestClient(create_app(self.ontology, self.settings))

    def test_health_is_unauthenticated(self) -> None:
        res = self.client.get("/health")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["hash"], compute_ontology_hash(self.ontology)[1])

    def test_tools_filtered_by_group(self) -> None:
        public = self.client.get("/tools", headers=_groups("public")).json()
        self.assertEqual([t["name"] for t in public["tools"]], ["healthCheck"])
        admin = self.client.get("/tools", headers=_groups("admin")).json()
        get_user = next(t for t in admin["tools"] if t["name"] == "getUser")
        self.assertNotIn("currentUser", get_user["input_schema"]["properties"])

    def test_no_groups_sees_no_tools(self) -> None:
        body = self.client.get("/tools").json()
        self.assertEqual(body["tools"], [])
        self.assertEqual(body["groups"], [])

    def test_prepare_denied(self) -> None:
        res = self.client.post("/tools/getUser/prepare", json={"args": {"id": "1"}}, headers=_groups("support"))
        self.assertEqual(res.status_code, 403)
        error = res.json()["errors"][0]
        self.assertEqual(error["code"], "ACCESS_DENIED")
        self.assertEqual(error["detail"], {"requires": ["admin"]})

    def test_prepare_unknown_function(self) -> None:
        res = self.client.post("/tools/nope/prepare", json={}, headers=_groups("admin"))
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json()["errors"][0]["code"], "FUNCTION_UNKNOWN")

    def test_prepare_invalid_input(self) -> None:
        res = self.client.post("/tools/listUsers/prepare", json={"args": {"status": "gone"}}, headers=_groups("support"))
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["path"], "$.status")

    def test_prepare_returns_context(self) -> None:
        res = self.client.post("/tools/healthCheck/prepare", json={"args": {}}, headers=_groups("public"))
        self.assertEqual(res.status_code, 200)
        body = res.json()
        self.assertEqual(body["args"], {})
        self.assertEqual(body["context"], {"env": "dev", "env_config": {"debug": True}, "access_groups": ["public"]})

    def test_ontology_auth_hook_supplies_context(self) -> None:
        def auth(request):
            return {"groups": ["admin"], "user": {"id": "u1", "email": "ada@example.com"}}

        client = TestClient(create_app(build_ontology(auth=auth), Settings()))
        res = client.post("/tools/getUser/prepare", json={"args": {"id": "7", "currentUser": {"id": "root"}}})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["args"]["currentUser"], {"id": "u1", "email": "ada@example.com"})

    def test_async_auth_hook_failure_is_401(self) -> None:
        async def auth(request):
            raise AuthenticationFailed("AUTH_MISSING_TOKEN", "Missing bearer token")

        client = TestClient(create_app(self.ontology, Settings(), auth_hook=auth))
        res = client.get("/tools")
        self.assertEqual(res.status_code, 401)
        self.assertEqual(res.json()["errors"][0]["detail"], {"reason": "AUTH_MISSING_TOKEN"})

    def test_invalid_auth_result_is_401(self) -> None:
        client = TestClient(create_app(self.ontology, Settings(), auth_hook=lambda request: "admin"))
        self.assertEqual(client.get("/tools").status_code, 401)

    def test_missing_auth_configuration(self) -> None:
        with self.assertRaises(RuntimeError):
            create_app(self.ontology, Settings())


class TestJwtHook(unittest.TestCase):
    def test_anonymous_groups_without_token(self) -> None:
        client = TestClient(
            create_app(build_ontology(), Settings(), auth_hook=jwt_auth_hook("http://jwks.invalid", anonymous_groups=["public"]))
        )
        body = client.get("/tools").json()
        self.assertEqual(body["groups"], ["public"])

    def test_missing_token_rejected(self) -> None:
        client = TestClient(create_app(build_ontology(), Settings(), auth_hook=jwt_auth_hook("http://jwks.invalid")))
        self.assertEqual(client.get("/tools").status_code, 401)

    def test_key_caches_are_per_url(self) -> None:
        responses = {
            "http://a.invalid/jwks": {"keys": [{"kid": "a"}]},
            "http://b.invalid/jwks": {"keys": [{"kid": "b"}]},
        }

        def fake_get(url, timeout=None):
            return mock.Mock(json=lambda: responses[url], raise_for_status=lambda: None)

        first = JwksCache("http://a.invalid/jwks")
        second = JwksCache("http://b.invalid/jwks")
        with mock.patch.object(auth_module.httpx, "get", side_effect=fake_get) as get:
            self.assertEqual(first.fetch()["keys"][0]["kid"], "a")
            self.assertEqual(second.fetch()["keys"][0]["kid"], "b")
            self.assertEqual(first.fetch()["keys"][0]["kid"], "a")
            first.fetch(force=True)
        self.assertEqual(get.call_count, 3)

    def test_expired_keys_are_refetched(self) -> None:
        cache = JwksCache("http://a.invalid/jwks", ttl=0)
        reply = mock.Mock(json=lambda: {"keys": []}, raise_for_status=lambda: None)
        with mock.patch.object(auth_module.httpx, "get", return_value=reply) as get:
            cache.fetch()
            cache.fetch()
        self.assertEqual(get.call_count, 2)

    def test_claims_mapping(self) -> None:
        result = claims_to_auth_result({"sub": "u1", "email": "a@b.c", "role": "admin", "org_id": "o9"})
        self.assertEqual(result, {"groups": ["admin"], "user": {"id": "u1", "email": "a@b.c"}, "organization": {"id": "o9"}})
        self.assertEqual(claims_to_auth_result({"groups": ["support", 3]})["groups"], ["support"])


class TestSettings(unittest.TestCase):
    def test_defaults(self) -> None:
        settings = load_settings({})
        self.assertEqual(settings.mode, "development")
        self.assertFalse(settings.headless)
        self.assertEqual(settings.lockfile_path, "ont.lock")

    def test_production_is_headless(self) -> None:
        self.assertTrue(load_settings({"APP_ENV": "production"}).headless)
        self.assertFalse(load_settings({"APP_ENV": "production", "ONT_MODE": "dev"}).headless)

    def test_invalid_port(self) -> None:
        with self.assertRaises(ValueError):
            load_settings({"ONT_REVIEW_PORT": "x"})


if __name__ == "__main__":
    unittest.main()
