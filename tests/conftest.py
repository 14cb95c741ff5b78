"""Pytest configuration and fixtures."""

import pytest

from helpers import PLATFORM_HOST, LoginHandler
from idp_saml_login.idp_saml_login import LoginContext


@pytest.fixture
def context():
    return LoginContext(
        account="testaccount",
        user="alice",
        password="secret",
        host=PLATFORM_HOST,
        scheme="https",
        port=None,
        connection_timeout=120,
        application=None,
        authenticator_url=f"https://{PLATFORM_HOST}/session/authenticator-request",
        login_url=f"https://{PLATFORM_HOST}/session/v1/login-request?request_id=1",
    )


@pytest.fixture
def login_handler():
    return LoginHandler()
