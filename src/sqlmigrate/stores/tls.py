"""Client TLS material for database connections."""

import ssl
from typing import Any

from sqlmigrate.core.errors import ConfigError
from sqlmigrate.stores.base import TLSSettings


def _check_pair(tls: TLSSettings) -> None:
    if bool(tls.key) != bool(tls.cert):
        raise ConfigError("ssl key and ssl cert must be given together")


def load_ssl_context(tls: TLSSettings) -> ssl.SSLContext:
    """Build a verifying client SSLContext from PEM files.

    The server certificate is checked against ``tls.ca`` (or the system
    trust store when no CA is given) and against the connection host name.

    Raises:
        ConfigError: If the files cannot be loaded.
    """
    _check_pair(tls)
    try:
        context = ssl.create_default_context(cafile=tls.ca)
        if tls.cert:
            context.load_cert_chain(certfile=tls.cert, keyfile=tls.key)
    except (OSError, ssl.SSLError) as e:
        raise ConfigError("load tls certificates", e) from e
    return context


def mysql_ssl_options(tls: TLSSettings) -> dict[str, Any]:
    """Connection keyword arguments enabling TLS for mysql.connector.

    Naming a server turns on identity verification; the certificate is then
    checked against the host being connected to.
    """
    _check_pair(tls)
    options: dict[str, Any] = {"ssl_disabled": False}
    if tls.ca:
        options["ssl_ca"] = tls.ca
        options["ssl_verify_cert"] = True
    if tls.cert:
        options["ssl_cert"] = tls.cert
        options["ssl_key"] = tls.key
    if tls.server_name:
        options["ssl_verify_identity"] = True
    return options
