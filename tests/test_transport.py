"""
Tests for the HTTP transport, using httpx.MockTransport in place of a server.
"""

import base64
import json

import httpx
import pytest

from enclavelink.attestation.types import (
    NetworkTimeoutError,
    ServerError,
    SessionRejectedError,
    UnreachableError,
)
from enclavelink.envelope import EncryptedEnvelope
from enclavelink.transport import HttpTransport, static_credentials

from enclave_fixtures import build_descriptor


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


HANDSHAKE_BODY = {
    "serverEphemeralPublic": b64(b"\x01" * 32),
    "serverStaticPublic": b64(b"\x02" * 32),
    "quote": b64(b"\x03" * 440),
    "iv": b64(b"\x04" * 12),
    "ciphertext": b64(b"\x05" * 16),
    "tag": b64(b"\x06" * 16),
    "signatureBody": '{"id": "1"}',
    "signature": b64(b"\x07" * 64),
    "certificates": "-----BEGIN%20CERTIFICATE-----%0A...",
}

REQUEST_ENVELOPE = EncryptedEnvelope(
    request_id=b"\x10" * 16,
    iv=b"\x11" * 12,
    mac=b"\x12" * 16,
    ciphertext=b"\x13" * 8,
    cookies={"AWSALB": "node-1"},
)


def make_transport(handler, **kwargs) -> HttpTransport:
    return HttpTransport("https://enclave.example/", transport=httpx.MockTransport(handler), **kwargs)


class TestFetchQuote:

    @pytest.mark.asyncio
    async def test_handshake_request_and_response(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json=HANDSHAKE_BODY, headers={"Set-Cookie": "AWSALB=node-7; Path=/"})

        transport = make_transport(handler, credentials=static_credentials("user", "secret"))
        response = await transport.fetch_quote(build_descriptor("cds"), b"\x09" * 32)
        await transport.aclose()

        assert seen["method"] == "PUT"
        assert seen["url"] == "https://enclave.example/v1/attestation/cds"
        assert seen["body"] == {"clientPublic": b64(b"\x09" * 32)}
        assert seen["auth"] == "Basic " + b64(b"user:secret")

        assert response.server_ephemeral_public == b"\x01" * 32
        assert response.server_static_public == b"\x02" * 32
        assert response.quote == b"\x03" * 440
        assert response.encrypted_request_id.iv == b"\x04" * 12
        assert response.encrypted_request_id.ciphertext == b"\x05" * 16
        assert response.encrypted_request_id.mac == b"\x06" * 16
        assert response.signature_body == b'{"id": "1"}'
        assert response.signature == b"\x07" * 64
        assert response.certificates == HANDSHAKE_BODY["certificates"]
        assert response.cookies == {"AWSALB": "node-7"}

    @pytest.mark.asyncio
    async def test_response_cookies_not_replayed(self):
        sent = []

        def handler(request: httpx.Request) -> httpx.Response:
            sent.append(request.headers.get("Cookie"))
            body = dict(HANDSHAKE_BODY, data=b64(b"\x21" * 4), mac=b64(b"\x23" * 16))
            return httpx.Response(200, json=body, headers={"Set-Cookie": f"AWSALB=node-{len(sent)}; Path=/"})

        async with make_transport(handler) as transport:
            first = await transport.fetch_quote(build_descriptor("cds"), b"\x09" * 32)
            second = await transport.fetch_quote(build_descriptor("kbs"), b"\x09" * 32)
            await transport.send_request(build_descriptor("cds"), REQUEST_ENVELOPE)

        assert first.cookies == {"AWSALB": "node-1"}
        assert second.cookies == {"AWSALB": "node-2"}
        assert sent == [None, None, "AWSALB=node-1"]

    @pytest.mark.asyncio
    async def test_no_credentials(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert "Authorization" not in request.headers
            return httpx.Response(200, json=HANDSHAKE_BODY)

        async with make_transport(handler) as transport:
            await transport.fetch_quote(build_descriptor(), b"\x09" * 32)

    @pytest.mark.asyncio
    async def test_missing_field(self):
        body = dict(HANDSHAKE_BODY)
        del body["quote"]

        async with make_transport(lambda request: httpx.Response(200, json=body)) as transport:
            with pytest.raises(ServerError, match="quote"):
                await transport.fetch_quote(build_descriptor(), b"\x09" * 32)

    @pytest.mark.asyncio
    async def test_invalid_base64(self):
        body = dict(HANDSHAKE_BODY, serverStaticPublic="not base64!")

        async with make_transport(lambda request: httpx.Response(200, json=body)) as transport:
            with pytest.raises(ServerError, match="serverStaticPublic"):
                await transport.fetch_quote(build_descriptor(), b"\x09" * 32)

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        async with make_transport(lambda request: httpx.Response(200, content=b"<html>")) as transport:
            with pytest.raises(ServerError, match="JSON"):
                await transport.fetch_quote(build_descriptor(), b"\x09" * 32)


class TestSendRequest:

    @pytest.mark.asyncio
    async def test_discovery_request(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            seen["cookie"] = request.headers.get("Cookie")
            return httpx.Response(200, json={
                "requestId": b64(b"\x20" * 16),
                "data": b64(b"\x21" * 4),
                "iv": b64(b"\x22" * 12),
                "mac": b64(b"\x23" * 16),
            })

        async with make_transport(handler) as transport:
            reply = await transport.send_request(build_descriptor("cds"), REQUEST_ENVELOPE, address_count=3)

        assert seen["url"] == "https://enclave.example/v1/discovery/cds"
        assert seen["body"] == {
            "requestId": b64(b"\x10" * 16),
            "addressCount": 3,
            "data": b64(b"\x13" * 8),
            "iv": b64(b"\x11" * 12),
            "mac": b64(b"\x12" * 16),
        }
        assert seen["cookie"] == "AWSALB=node-1"
        assert reply.request_id == b"\x20" * 16
        assert reply.ciphertext == b"\x21" * 4
        assert reply.iv == b"\x22" * 12
        assert reply.mac == b"\x23" * 16

    @pytest.mark.asyncio
    async def test_backup_request_reuses_request_id(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "data": b64(b"\x21" * 4),
                "iv": b64(b"\x22" * 12),
                "mac": b64(b"\x23" * 16),
            })

        async with make_transport(handler) as transport:
            reply = await transport.send_request(build_descriptor("kbs"), REQUEST_ENVELOPE)

        assert seen["url"] == "https://enclave.example/v1/backup/kbs"
        assert "addressCount" not in seen["body"]
        assert reply.request_id == REQUEST_ENVELOPE.request_id


class TestServiceCalls:

    @pytest.mark.asyncio
    async def test_fetch_token(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["cookie"] = request.headers.get("Cookie")
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={
                "backupId": b64(b"\xb0" * 32),
                "token": b64(b"\x70" * 32),
                "tries": 10,
            })

        transport = make_transport(handler, credentials=static_credentials("user", "secret"))
        async with transport:
            token = await transport.fetch_token(build_descriptor("kbs"), {"AWSALB": "node-1"})

        assert seen["method"] == "GET"
        assert seen["url"] == "https://enclave.example/v1/token/kbs"
        assert seen["cookie"] == "AWSALB=node-1"
        assert seen["auth"] == "Basic " + b64(b"user:secret")
        assert token.backup_id == b"\xb0" * 32
        assert token.token == b"\x70" * 32
        assert token.tries == 10
        assert "token=" not in repr(token)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tries", [-1, "10", None, True])
    async def test_fetch_token_bad_tries(self, tries):
        body = {"backupId": b64(b"\xb0" * 32), "token": b64(b"\x70" * 32), "tries": tries}

        async with make_transport(lambda request: httpx.Response(200, json=body)) as transport:
            with pytest.raises(ServerError, match="tries"):
                await transport.fetch_token(build_descriptor("kbs"))

    @pytest.mark.asyncio
    async def test_fetch_token_rejected(self):
        async with make_transport(lambda request: httpx.Response(403)) as transport:
            with pytest.raises(SessionRejectedError):
                await transport.fetch_token(build_descriptor("kbs"), {"AWSALB": "node-1"})

    @pytest.mark.asyncio
    async def test_send_feedback(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(204)

        async with make_transport(handler) as transport:
            await transport.send_feedback("attestation-error", "MrenclaveMismatchError")

        assert seen["method"] == "PUT"
        assert seen["url"] == "https://enclave.example/v1/directory/feedback-v3/attestation-error"
        assert seen["body"] == {"reason": "MrenclaveMismatchError"}

    @pytest.mark.asyncio
    async def test_send_feedback_without_reason(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(204)

        async with make_transport(handler) as transport:
            await transport.send_feedback("ok")
        assert bodies == [{"reason": ""}]


class TestErrorMapping:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403, 409])
    async def test_session_rejected(self, status):
        async with make_transport(lambda request: httpx.Response(status)) as transport:
            with pytest.raises(SessionRejectedError):
                await transport.send_request(build_descriptor(), REQUEST_ENVELOPE)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 404, 429, 500, 503])
    async def test_server_error(self, status):
        async with make_transport(lambda request: httpx.Response(status)) as transport:
            with pytest.raises(ServerError) as exc_info:
                await transport.fetch_quote(build_descriptor(), b"\x09" * 32)
        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        async with make_transport(handler) as transport:
            with pytest.raises(NetworkTimeoutError):
                await transport.fetch_quote(build_descriptor(), b"\x09" * 32)

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with make_transport(handler) as transport:
            with pytest.raises(UnreachableError) as exc_info:
                await transport.send_request(build_descriptor(), REQUEST_ENVELOPE)
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
