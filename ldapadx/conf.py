"""
Access to the Django settings ldapadx reads.

Package-wide settings are named ``LDAPADX_<NAME>``; connection settings live
in ``LDAP_SERVERS`` like this::

    LDAP_SERVERS = {
        "default": {
            "basedn": "dc=example,dc=com",
            "read": {
                "url": "ldap://dc1.example.com",
                "user": "cn=reader,dc=example,dc=com",
                "password": "secret",
                "use_starttls": True,
                "tls_verify": "always",
                "timeout": 15.0,
            },
            "write": {...},
        }
    }
"""

from typing import Any

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

#: Defaults for every ``LDAPADX_`` setting
DEFAULTS: dict[str, Any] = {
    "SCHEMA_DIR": None,
    "STRICT_SCHEMA": False,
    "DEFAULT_PAGE_SIZE": 1000,
    "MAX_REFERRALS": 3,
}


def get_setting(name: str, default: Any = None) -> Any:
    """
    Return ``LDAPADX_<name>`` from the Django settings.

    The default comes from ``default`` if given, otherwise from
    :data:`DEFAULTS`.  Defaults are also used when Django settings have not
    been configured at all, so the package can be used outside a Django
    project.

    Args:
        name: the setting name without the ``LDAPADX_`` prefix

    Keyword Args:
        default: value to use when the setting is absent

    Returns:
        The configured value or the default.

    """
    if default is None:
        default = DEFAULTS.get(name)
    if not settings.configured:
        return default
    return getattr(settings, f"LDAPADX_{name}", default)


def get_server_config(server: str = "default", key: str = "read") -> dict[str, Any]:
    """
    Return the connection dictionary ``settings.LDAP_SERVERS[server][key]``.

    The server-level ``basedn``, when present, is copied into the returned
    dictionary unless the connection dictionary sets its own.

    Raises:
        ImproperlyConfigured: the server, the key or its ``url`` is missing

    """
    if not settings.configured:
        msg = "Django settings are not configured; cannot read LDAP_SERVERS"
        raise ImproperlyConfigured(msg)
    servers = getattr(settings, "LDAP_SERVERS", {})
    try:
        server_config = servers[server]
    except KeyError as e:
        msg = f'settings.LDAP_SERVERS has no server named "{server}"'
        raise ImproperlyConfigured(msg) from e
    try:
        config = dict(server_config[key])
    except KeyError as e:
        msg = f'settings.LDAP_SERVERS["{server}"] has no "{key}" configuration'
        raise ImproperlyConfigured(msg) from e
    if "url" not in config:
        msg = f'settings.LDAP_SERVERS["{server}"]["{key}"] has no "url"'
        raise ImproperlyConfigured(msg)
    if "basedn" in server_config:
        config.setdefault("basedn", server_config["basedn"])
    return config
