"""Tests for indicator normalization and extraction."""

import pytest

from mw_core.intel.indicators import (
    defang_to_normal,
    extract_domain,
    extract_ips_from_headers,
    extract_root_domain,
    extract_urls,
    extract_urls_from_html,
    get_tld,
    is_private_ip,
    is_valid_ipv4,
    normalize_url,
)


class TestNormalizeUrl:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("HTTPS://Example.COM/Path/", "https://example.com/path"),
            ("http://example.com:80/a", "http://example.com/a"),
            ("https://example.com:443/", "https://example.com"),
            ("https://example.com:8443/a", "https://example.com:8443/a"),
            ("https://example.com/a?x=1#frag", "https://example.com/a?x=1"),
            ("  https://example.com  ", "https://example.com"),
        ],
    )
    def test_normalization(self, raw: str, expected: str):
        assert normalize_url(raw) == expected

    def test_unparseable_is_lowercased(self):
        assert normalize_url("Not A URL/") == "not a url"


class TestDomains:
    def test_extract_domain(self):
        assert extract_domain("https://Login.Example.com/x") == "login.example.com"
        assert extract_domain("example.org/path") == "example.org"

    @pytest.mark.parametrize(
        "host,root",
        [
            ("mail.example.com", "example.com"),
            ("a.b.c.example.com", "example.com"),
            ("shop.example.co.uk", "example.co.uk"),
            ("https://www.example.com/login", "example.com"),
            ("example.com.", "example.com"),
        ],
    )
    def test_extract_root_domain(self, host: str, root: str):
        assert extract_root_domain(host) == root

    def test_get_tld(self):
        assert get_tld("example.com") == "com"
        assert get_tld("example.co.uk") == "co.uk"

    def test_defang(self):
        assert defang_to_normal("hxxps[:]//evil[.]example/x") == "https://evil.example/x"


class TestIps:
    @pytest.mark.parametrize(
        "ip,valid",
        [
            ("8.8.8.8", True),
            ("255.255.255.255", True),
            ("256.1.1.1", False),
            ("01.2.3.4", False),
            ("1.2.3", False),
            ("a.b.c.d", False),
        ],
    )
    def test_is_valid_ipv4(self, ip: str, valid: bool):
        assert is_valid_ipv4(ip) is valid

    @pytest.mark.parametrize("ip", ["10.0.0.1", "192.168.1.1", "172.16.5.4", "127.0.0.1"])
    def test_private(self, ip: str):
        assert is_private_ip(ip) is True

    def test_public(self):
        assert is_private_ip("8.8.8.8") is False

    def test_headers(self):
        headers = {
            "received": "from mx.example.net (mx.example.net [8.8.4.4]) by 10.0.0.5",
            "X-Originating-IP": "[1.1.1.1]",
            "X-Sender-IP": "8.8.4.4",
        }
        assert extract_ips_from_headers(headers) == ["8.8.4.4", "1.1.1.1"]


class TestUrlExtraction:
    def test_plain_text(self):
        urls = extract_urls("Go to https://a.example/x and hxxp[:]//b[.]example/y now")
        assert [u.url for u in urls] == ["https://a.example/x", "http://b.example/y"]
        assert urls[1].domain == "b.example"

    def test_plain_text_dedupes(self):
        urls = extract_urls("https://a.example https://a.example")
        assert len(urls) == 1

    def test_empty(self):
        assert extract_urls("") == []
        assert extract_urls_from_html("") == []

    def test_html_anchor_with_display_text(self):
        html = (
            '<p>Click <a href="https://evil.example/login">https://bank.example</a></p>'
            '<a href="mailto:x@y.example">mail</a>'
        )
        urls = extract_urls_from_html(html)
        assert urls[0].url == "https://evil.example/login"
        assert urls[0].display_text == "https://bank.example"
        assert "mailto:x@y.example" not in [u.url for u in urls]
        # The display text is itself a URL found in the document
        assert "https://bank.example" in [u.url for u in urls]
