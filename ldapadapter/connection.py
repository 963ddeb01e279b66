"""
LDAP connection handling.

This module provides the :py:class:`Connection` class, a thin wrapper around a
python-ldap ``LDAPObject`` that knows how to open and bind itself from a
``settings.LDAP_SERVERS`` style configuration dictionary, and which owns the
session-scoped server controls (most importantly the paged results control)
that queries on the connection share.
"""

import logging
from pathlib import Path
from typing import Any

from ldap.controls import LDAPControl, SimplePagedResultsControl

from ldapadapter import ldap

from .exceptions import ConnectionFailed, InvalidCredentials
from .typing import ErrorInfo

logger = logging.getLogger(__name__)

#: The OID of the RFC 2696 Simple Paged Results control.
PAGINATION_OID: str = SimplePagedResultsControl.controlType


def error_info(exc: Exception) -> ErrorInfo:
    """
    Pull the LDAP result code and error text out of a python-ldap exception.

    python-ldap raises its errors with a single dict argument holding
    ``result``, ``desc`` and, optionally, ``info``.

    Args:
        exc: the exception raised by python-ldap

    Returns:
        A ``(code, message)`` tuple.  ``code`` is 0 if the exception carried
        no result code.

    """
    details: Any = exc.args[0] if exc.args else {}
    if not isinstance(details, dict):
        return 0, str(details)
    code = int(details.get("result", 0) or 0)
    message = details.get("desc", "") or ""
    if details.get("info"):
        message = f"{message} ({details['info']})" if message else details["info"]
    return code, message


class Connection:
    """
    A single connection to an LDAP server.

    The connection is not thread-safe: the paged results control lives on the
    connection, so only one query at a time may page through results on it.
    Callers sharing a connection between threads must serialize access
    themselves.

    Args:
        config: a dictionary in the same shape as one entry of
            ``settings.LDAP_SERVERS``

    """

    def __init__(self, config: dict[str, Any]) -> None:
        self.logger = logger
        self.config = config
        #: The server controls currently attached to this session.
        self.server_controls: list[LDAPControl] = []
        #: ``(code, message)`` of the last failed protocol call, if any.
        self.last_error: ErrorInfo | None = None
        self._ldap_object: ldap.ldapobject.LDAPObject | None = None  # type: ignore[name-defined]
        self._bound: bool = False

    def _connect(self) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]
        """
        Create and return a new, unbound LDAP connection object.

        Raises:
            ValueError: If the ``tls_verify`` value in the configuration is invalid.
            OSError: If the CA Certificate file is provided but does not exist
                or is not a file.

        Returns:
            An ``LDAPObject``, with StartTLS already negotiated if configured.

        """
        config = self.config
        try:
            url = config["url"]
        except KeyError as e:
            msg = "LDAP server configuration has no 'url' key"
            raise ValueError(msg) from e
        ldap_object: ldap.ldapobject.LDAPObject = ldap.initialize(url)  # type: ignore[name-defined]
        if config.get("follow_referrals", False):
            ldap_object.set_option(ldap.OPT_REFERRALS, 1)  # type: ignore[attr-defined]
        else:
            ldap_object.set_option(ldap.OPT_REFERRALS, 0)  # type: ignore[attr-defined]
        timeout = config.get("timeout", 15.0)
        ldap_object.set_option(ldap.OPT_NETWORK_TIMEOUT, float(timeout))  # type: ignore[attr-defined]
        tls_verify = config.get("tls_verify", "never")
        if tls_verify == "never":
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_NEVER)  # type: ignore[attr-defined]
        elif tls_verify == "always":
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_DEMAND)  # type: ignore[attr-defined]
        else:
            msg = f"Invalid tls_verify value: {tls_verify}"
            raise ValueError(msg)
        if tls_ca_certfile := config.get("tls_ca_certfile", None):
            ca_certfile = Path(tls_ca_certfile)
            if not ca_certfile.is_file():
                msg = f"CA Certificate file does not exist or is not a file: {tls_ca_certfile}"
                raise OSError(msg)
            ldap_object.set_option(ldap.OPT_X_TLS_CACERTFILE, tls_ca_certfile)  # type: ignore[attr-defined]
        ldap_object.set_option(ldap.OPT_X_TLS_NEWCTX, 0)  # type: ignore[attr-defined]
        if config.get("use_starttls", True):
            ldap_object.start_tls_s()
        return ldap_object

    @property
    def resource(self) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]
        """
        The python-ldap ``LDAPObject`` for this connection, created on first use.
        """
        if self._ldap_object is None:
            self._ldap_object = self._connect()
            if self.server_controls:
                self._ldap_object.set_option(
                    ldap.OPT_SERVER_CONTROLS,  # type: ignore[attr-defined]
                    self.server_controls,
                )
        return self._ldap_object

    def is_bound(self) -> bool:
        return self._bound

    def bind(self, dn: str | None = None, password: str | None = None) -> bool:
        """
        Bind to the LDAP server.

        Keyword Args:
            dn: the DN to bind as.  If not given, ``user`` and ``password``
                from the configuration are used.
            password: the password for ``dn``

        Raises:
            InvalidCredentials: the server rejected the credentials
            ConnectionFailed: the bind failed for any other reason

        Returns:
            ``True`` once the connection is bound.

        """
        if not dn:
            dn = self.config.get("user", "")
            password = self.config.get("password", "")
        try:
            self.resource.simple_bind_s(dn, password)
        except ldap.INVALID_CREDENTIALS as e:  # type: ignore[attr-defined]
            self._bound = False
            self.record_error(e)
            self.logger.warning("ldapadapter.connection.bind.invalid_credentials dn=%s", dn)
            msg = f"Invalid credentials for {dn}"
            raise InvalidCredentials(msg) from e
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            self._bound = False
            code, message = self.record_error(e)
            self.logger.warning(
                "ldapadapter.connection.bind.failed dn=%s code=%d error=%s",
                dn,
                code,
                message,
            )
            msg = f"Could not bind as {dn}: {message}"
            raise ConnectionFailed(msg) from e
        self._bound = True
        self.logger.info("ldapadapter.connection.bind.success dn=%s", dn)
        return True

    def unbind(self) -> None:
        """
        Unbind from the server and drop the ``LDAPObject`` and its controls.
        """
        if self._ldap_object is not None:
            self._ldap_object.unbind_s()
        self._ldap_object = None
        self._bound = False
        self.server_controls = []

    def record_error(self, exc: Exception) -> ErrorInfo:
        """
        Remember ``exc`` as the last protocol error on this connection.

        Returns:
            The ``(code, message)`` of ``exc``.

        """
        self.last_error = error_info(exc)
        return self.last_error

    def get_option(self, option: int) -> Any:
        return self.resource.get_option(option)

    def set_option(self, option: int, value: Any) -> None:
        self.resource.set_option(option, value)

    # -----------------------
    # Session server controls
    # -----------------------

    def get_server_controls(self) -> list[LDAPControl]:
        """
        Return a copy of the server controls attached to this session.
        """
        return list(self.server_controls)

    def set_server_controls(self, controls: list[LDAPControl]) -> None:
        """
        Replace the server controls attached to this session.

        The controls are also written through to the ``LDAPObject`` so that
        code using :py:attr:`resource` directly sees the same state.

        Args:
            controls: the new list of server controls

        """
        self.server_controls = list(controls)
        if self._ldap_object is not None:
            self._ldap_object.set_option(
                ldap.OPT_SERVER_CONTROLS,  # type: ignore[attr-defined]
                self.server_controls,
            )

    def control_paged_result(
        self,
        size: int,
        critical: bool = True,  # noqa: FBT001, FBT002
        cookie: bytes | str = "",
    ) -> None:
        """
        Attach a paged results control to this session, replacing any paged
        results control already attached.

        A ``size`` of 0 tells the server we are done paging.

        Args:
            size: the page size to request

        Keyword Args:
            critical: whether the control is critical
            cookie: the cookie returned with the previous page, or empty for
                the first page

        """
        controls = [c for c in self.server_controls if c.controlType != PAGINATION_OID]
        controls.append(SimplePagedResultsControl(critical, size=size, cookie=cookie))
        self.set_server_controls(controls)
