"""Canned IdP and platform responses shared by the tests."""

import base64
import json

import requests

IDP_URL = "https://dev-1234.okta.com/"
SSO_URL = "https://dev-1234.okta.com/app/platform/exk1/sso/saml"
TOKEN_URL = "https://dev-1234.okta.com/api/v1/authn"
PLATFORM_HOST = "testaccount.example.com"
POSTBACK_URL = "https://testaccount.example.com/fed/login"

SAML_ASSERTION = (
    b'<samlp:Response xmlns:samlp="urn:oasis:names:tc:SAML:2.0:protocol">'
    b"<samlp:Status/></samlp:Response>"
)


def saml_html(action=POSTBACK_URL):
    """Auto-submit form page as returned by an IdP SSO endpoint."""
    value = base64.b64encode(SAML_ASSERTION).decode("ascii")
    return (
        "<!DOCTYPE html><html><head><title>Signing in</title></head>"
        '<body onload="document.forms[0].submit()">'
        f'<form id="appForm" action="{action}" method="POST">'
        f'<input name="SAMLResponse" type="hidden" value="{value}"/>'
        '<input name="RelayState" type="hidden" value="/some/deep/link"/>'
        "</form></body></html>"
    )


def make_response(status_code=200, json_body=None, text=None, content_type=None):
    """Build a real requests.Response without touching the network."""
    response = requests.Response()
    response.status_code = status_code
    response.reason = "OK" if status_code < 400 else "Unauthorized"
    if json_body is not None:
        response._content = json.dumps(json_body).encode("utf-8")
        content_type = content_type or "application/json"
    else:
        response._content = (text or "").encode("utf-8")
        content_type = content_type or "text/html"
    response.headers["Content-Type"] = content_type
    response.encoding = "utf-8"
    return response


def authenticator_response(sso_url=SSO_URL, token_url=TOKEN_URL):
    return make_response(
        json_body={
            "success": True,
            "code": None,
            "message": None,
            "data": {"ssoUrl": sso_url, "tokenUrl": token_url},
        }
    )


def token_response(token="one-time-token"):
    return make_response(json_body={"cookieToken": token, "status": "SUCCESS"})


def login_response():
    return make_response(
        json_body={
            "success": True,
            "code": None,
            "message": None,
            "data": {
                "token": "session-token",
                "masterToken": "master-token",
                "sessionId": 4242,
            },
        }
    )


class FakeTransport:
    """Replays canned responses in order and records every request.

    An entry may be a coroutine function taking the HttpRequest, its result
    is used as the response.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    async def send(self, http_request):
        self.requests.append(http_request)
        response = self.responses.pop(0)
        if callable(response):
            response = await response(http_request)
        prepared = requests.Request(
            http_request.method,
            http_request.url,
            headers=http_request.headers,
            params=http_request.params,
            json=http_request.json,
        ).prepare()
        response.request = prepared
        response.url = prepared.url
        return response


class LoginHandler:
    """Stands in for LoginSession.process_login_response."""

    def __init__(self):
        self.calls = []

    def __call__(self, body):
        self.calls.append(body)
        return body["data"]


