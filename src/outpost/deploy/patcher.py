"""Rewriting of host and fingerprint placeholders in the relay configuration."""

from __future__ import annotations

import ipaddress
import json
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from pydantic import ValidationError as PydanticValidationError

from outpost.config.validator import flatten_pydantic_errors
from outpost.lib.errors import MalformedConfigError
from outpost.models.bundle import PLACEHOLDER_CERT_SHA256, ConfigDocument

WILDCARD_HOSTS = frozenset({"", "0.0.0.0", "::", "*", "localhost", "unknown"})
PLACEHOLDER_FINGERPRINTS = frozenset({"", PLACEHOLDER_CERT_SHA256})


def parse_config_document(raw: str | bytes | dict[str, Any]) -> ConfigDocument:
    """Parse raw JSON or a mapping into a ConfigDocument.

    Raises:
        MalformedConfigError: If the input is not a JSON object or lacks apiUrl
    """
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedConfigError(f"Configuration is not valid JSON: {e}") from e
    else:
        data = raw

    if not isinstance(data, dict):
        raise MalformedConfigError("Configuration must be a JSON object")
    if "apiUrl" not in data:
        raise MalformedConfigError("Configuration is missing the 'apiUrl' field")

    try:
        return ConfigDocument.model_validate(data)
    except PydanticValidationError as e:
        raise MalformedConfigError("; ".join(flatten_pydantic_errors(e))) from e


def _format_host(host: str) -> str:
    """Bracket IPv6 literals for use in a URL netloc."""
    try:
        if ipaddress.ip_address(host).version == 6:
            return f"[{host}]"
    except ValueError:
        pass
    return host


def _patch_api_url(api_url: str, server_ip: str, api_port: int) -> str:
    parts = urlsplit(api_url)
    try:
        port = parts.port
    except ValueError as e:
        raise MalformedConfigError(f"apiUrl has an invalid port: {api_url}") from e

    host = parts.hostname or ""
    if host not in WILDCARD_HOSTS and port != api_port:
        return api_url

    netloc = _format_host(server_ip)
    if port is not None:
        netloc = f"{netloc}:{port}"
    if parts.username:
        userinfo = parts.username
        if parts.password:
            userinfo = f"{userinfo}:{parts.password}"
        netloc = f"{userinfo}@{netloc}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


class ConfigPatcher:
    """Points a bundled configuration at the deployer host.

    Patching is pure: the input document is never modified, and applying the
    same patch twice yields the same document.
    """

    def patch(
        self,
        doc: ConfigDocument,
        server_ip: str,
        api_port: int,
        cert_sha256: str | None = None,
    ) -> ConfigDocument:
        """Return a copy of ``doc`` with placeholders replaced.

        Args:
            doc: Configuration as shipped in the bundle
            server_ip: Address of the deployer host
            api_port: Management API port; the host of an apiUrl on this port
                is rewritten even when it is a concrete address
            cert_sha256: Certificate fingerprint to fill into a placeholder

        Returns:
            Patched ConfigDocument

        Raises:
            MalformedConfigError: If apiUrl cannot be parsed
        """
        if not server_ip:
            raise MalformedConfigError("A server IP is required to patch apiUrl")

        update: dict[str, Any] = {
            "api_url": _patch_api_url(doc.api_url, server_ip, api_port)
        }

        if doc.hostname is not None and doc.hostname in WILDCARD_HOSTS:
            update["hostname"] = server_ip

        if cert_sha256 and (doc.cert_sha256 or "") in PLACEHOLDER_FINGERPRINTS:
            update["cert_sha256"] = cert_sha256

        return doc.model_copy(update=update)
