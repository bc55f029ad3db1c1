"""Unit tests for configuration patching."""

from __future__ import annotations

import json

import pytest

from outpost.deploy.patcher import ConfigPatcher, parse_config_document
from outpost.lib.errors import MalformedConfigError
from outpost.models.bundle import PLACEHOLDER_CERT_SHA256, ConfigDocument


def _doc(**fields: object) -> ConfigDocument:
    payload = {"apiUrl": "https://0.0.0.0:8081/Secr3tPrefix", **fields}
    return parse_config_document(payload)


class TestParseConfigDocument:
    """Tests for parse_config_document."""

    def test_parses_json_bytes(self) -> None:
        raw = json.dumps(
            {"apiUrl": "https://1.2.3.4:8081/abc", "certSha256": "ff", "extra": 1}
        ).encode()

        doc = parse_config_document(raw)

        assert doc.api_url == "https://1.2.3.4:8081/abc"
        assert doc.cert_sha256 == "ff"
        assert json.loads(doc.to_json())["extra"] == 1

    def test_invalid_json_raises(self) -> None:
        with pytest.raises(MalformedConfigError, match="not valid JSON"):
            parse_config_document("{not json")

    def test_non_object_raises(self) -> None:
        with pytest.raises(MalformedConfigError, match="JSON object"):
            parse_config_document("[1, 2]")

    def test_missing_api_url_raises(self) -> None:
        with pytest.raises(MalformedConfigError, match="apiUrl"):
            parse_config_document({"certSha256": "ff"})

    def test_relative_api_url_raises(self) -> None:
        with pytest.raises(MalformedConfigError):
            parse_config_document({"apiUrl": "/just/a/path"})


class TestConfigPatcher:
    """Tests for ConfigPatcher.patch."""

    def test_wildcard_host_replaced(self) -> None:
        patched = ConfigPatcher().patch(_doc(), "203.0.113.7", 8081)

        assert patched.api_url == "https://203.0.113.7:8081/Secr3tPrefix"

    def test_host_on_api_port_replaced(self) -> None:
        """A concrete host is replaced when the URL uses the API port."""
        doc = _doc(apiUrl="https://10.0.0.5:8081/abc")

        patched = ConfigPatcher().patch(doc, "203.0.113.7", 8081)

        assert patched.api_url == "https://203.0.113.7:8081/abc"

    def test_unrelated_host_left_alone(self) -> None:
        doc = _doc(apiUrl="https://manager.example.com:9443/abc")

        patched = ConfigPatcher().patch(doc, "203.0.113.7", 8081)

        assert patched.api_url == "https://manager.example.com:9443/abc"

    def test_ipv6_server_bracketed(self) -> None:
        patched = ConfigPatcher().patch(_doc(), "2001:db8::1", 8081)

        assert patched.api_url == "https://[2001:db8::1]:8081/Secr3tPrefix"

    def test_patch_is_idempotent(self) -> None:
        patcher = ConfigPatcher()
        once = patcher.patch(_doc(hostname="0.0.0.0"), "203.0.113.7", 8081, "ab12")
        twice = patcher.patch(once, "203.0.113.7", 8081, "ab12")

        assert once.to_json() == twice.to_json()

    def test_input_not_modified(self) -> None:
        doc = _doc(hostname="0.0.0.0")

        ConfigPatcher().patch(doc, "203.0.113.7", 8081)

        assert doc.api_url == "https://0.0.0.0:8081/Secr3tPrefix"
        assert doc.hostname == "0.0.0.0"

    def test_wildcard_hostname_replaced(self) -> None:
        patched = ConfigPatcher().patch(_doc(hostname="0.0.0.0"), "203.0.113.7", 8081)

        assert patched.hostname == "203.0.113.7"

    def test_real_hostname_kept(self) -> None:
        patched = ConfigPatcher().patch(
            _doc(hostname="vpn.example.com"), "203.0.113.7", 8081
        )

        assert patched.hostname == "vpn.example.com"

    def test_placeholder_fingerprint_filled(self) -> None:
        doc = _doc(certSha256=PLACEHOLDER_CERT_SHA256)

        patched = ConfigPatcher().patch(doc, "203.0.113.7", 8081, "ab12")

        assert patched.cert_sha256 == "ab12"

    def test_real_fingerprint_kept(self) -> None:
        doc = _doc(certSha256="ff00")

        patched = ConfigPatcher().patch(doc, "203.0.113.7", 8081, "ab12")

        assert patched.cert_sha256 == "ff00"

    def test_extra_keys_preserved(self) -> None:
        doc = _doc(metricsEnabled=True)

        patched = ConfigPatcher().patch(doc, "203.0.113.7", 8081)

        assert json.loads(patched.to_json())["metricsEnabled"] is True

    def test_empty_server_ip_raises(self) -> None:
        with pytest.raises(MalformedConfigError, match="server IP"):
            ConfigPatcher().patch(_doc(), "", 8081)

    def test_invalid_port_raises(self) -> None:
        doc = _doc(apiUrl="https://0.0.0.0:99999/abc")

        with pytest.raises(MalformedConfigError, match="invalid port"):
            ConfigPatcher().patch(doc, "203.0.113.7", 8081)
