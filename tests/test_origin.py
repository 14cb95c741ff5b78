"""Tests for URL origin validation."""

from urllib.parse import urlsplit

import pytest

from idp_saml_login.idp_saml_login import (
    OriginMismatch,
    same_origin,
    url_origin,
    verify_url_origin,
)


class TestUrlOrigin:
    """Tests for url_origin and same_origin."""

    def test_origin_is_scheme_and_host(self) -> None:
        url = urlsplit("https://dev-1234.okta.com:8443/app/sso?x=1#frag")
        assert url_origin(url) == ("https", "dev-1234.okta.com")

    @pytest.mark.parametrize(
        "candidate",
        [
            "https://idp.example.com/",
            "https://idp.example.com:8443/",
            "https://idp.example.com/app/sso/saml",
            "https://idp.example.com/api/v1/authn?x=1",
            "https://idp.example.com/#fragment",
            "HTTPS://IDP.example.com/",
        ],
    )
    def test_same_origin_ignores_port_path_query_fragment(self, candidate: str) -> None:
        assert same_origin(urlsplit(candidate), urlsplit("https://idp.example.com"))

    @pytest.mark.parametrize(
        "candidate",
        [
            "http://idp.example.com/",
            "https://evil.example.com/",
            "https://idp.example.com.evil.com/",
            "https://evil.com/https://idp.example.com/",
        ],
    )
    def test_different_scheme_or_host(self, candidate: str) -> None:
        assert not same_origin(urlsplit(candidate), urlsplit("https://idp.example.com"))


class TestVerifyUrlOrigin:
    """Tests for verify_url_origin."""

    def test_matching_origin_passes(self) -> None:
        verify_url_origin(
            urlsplit("https://idp.example.com/app/sso"),
            urlsplit("https://idp.example.com/"),
        )

    def test_mismatch_carries_both_urls(self) -> None:
        with pytest.raises(OriginMismatch) as exc_info:
            verify_url_origin(
                urlsplit("https://evil.example.com/api/v1/authn"),
                urlsplit("https://idp.example.com/"),
            )

        assert exc_info.value.url == "https://evil.example.com/api/v1/authn"
        assert exc_info.value.expected == "https://idp.example.com/"
        assert "evil.example.com" in str(exc_info.value)
