"""Tests for the request variants and their wire format."""

import pytest

from helpers import SSO_URL, TOKEN_URL
from idp_saml_login.idp_saml_login import (
    CLIENT_APP_ID,
    IDP_TOKEN_TIMEOUT,
    AuthnRestRequest,
    build_authenticator_request,
    build_idp_token_request,
    build_login_request,
    build_saml_request,
    client_environment,
    to_http_request,
)


class TestBuilders:
    """Request builders only package context values."""

    def test_authenticator_request(self, context) -> None:
        request = build_authenticator_request(context, "https://dev-1234.okta.com/")

        assert isinstance(request, AuthnRestRequest)
        assert request.url == context.authenticator_url
        assert request.timeout == context.connection_timeout
        assert request.data["ACCOUNT_NAME"] == "testaccount"
        assert request.data["AUTHENTICATOR"] == "https://dev-1234.okta.com/"
        assert request.data["CLIENT_APP_ID"] == CLIENT_APP_ID
        assert "LOGIN_NAME" not in request.data

    def test_idp_token_request(self, context) -> None:
        request = build_idp_token_request(context, TOKEN_URL)

        assert request.url == TOKEN_URL
        assert (request.username, request.password) == ("alice", "secret")
        assert request.timeout == IDP_TOKEN_TIMEOUT

    def test_saml_request_has_no_timeout(self) -> None:
        request = build_saml_request(SSO_URL, "tok")

        assert request.timeout is None
        assert request.onetime_token == "tok"

    def test_login_request(self, context) -> None:
        request = build_login_request(context, "<html/>")

        assert request.url == context.login_url
        assert request.data["LOGIN_NAME"] == "alice"
        assert request.data["PASSWORD"] == "secret"
        assert request.data["RAW_SAML_RESPONSE"] == "<html/>"
        assert request.data["CLIENT_ENVIRONMENT"]["APPLICATION"] == CLIENT_APP_ID

    def test_client_environment_application(self) -> None:
        environment = client_environment("reporting-job")

        assert environment["APPLICATION"] == "reporting-job"
        assert {"OS", "OS_VERSION", "PYTHON_VERSION", "PYTHON_RUNTIME"} <= set(environment)


class TestToHttpRequest:
    """Dispatch from request variant to wire level request."""

    def test_platform_request_is_wrapped_in_data(self, context) -> None:
        http_request = to_http_request(build_authenticator_request(context, "https://idp/"))

        assert http_request.method == "POST"
        assert http_request.json == {"data": build_authenticator_request(context, "https://idp/").data}
        assert http_request.headers["Content-Type"] == "application/json"
        assert http_request.headers["Accept"] == "application/json"
        assert http_request.params is None

    def test_idp_token_request(self, context) -> None:
        http_request = to_http_request(build_idp_token_request(context, TOKEN_URL))

        assert http_request.method == "POST"
        assert http_request.json == {"username": "alice", "password": "secret"}
        assert http_request.timeout == IDP_TOKEN_TIMEOUT

    def test_saml_request(self) -> None:
        http_request = to_http_request(build_saml_request(SSO_URL, "tok"))

        assert http_request.method == "GET"
        assert http_request.url == (
            SSO_URL + "?RelayState=%2Fsome%2Fdeep%2Flink&onetimetoken=tok"
        )
        assert http_request.json is None
        assert http_request.params is None
        assert http_request.headers["Accept"] == "*/*"

    def test_unknown_request_type(self) -> None:
        with pytest.raises(TypeError):
            to_http_request(("GET", SSO_URL))
