"""Connector types and their credential shapes.

Credentials are modelled as a tagged union (`MailCredential` /
`DatabaseCredential`). The untyped JSON bag stored on a job is converted at
the persistence boundary only:

- `credential_from_input` parses a request payload or a stored bag,
- `credential_to_storage` / `credential_from_storage` split secret fields
  into the encrypted column and merge them back.

Validation is pure: it inspects the credential and raises
`MissingFieldError` naming the first empty required field.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple, Union

from backend.services.autosync.config_crypto import SecretSealer
from backend.services.autosync.errors import MissingFieldError, ValidationError


MAIL_GMAIL = "mail-gmail"
MAIL_OUTLOOK = "mail-outlook"
DB_POSTGRES = "db-postgres"
DB_MYSQL = "db-mysql"

MAIL_CONNECTORS = (MAIL_GMAIL, MAIL_OUTLOOK)
DATABASE_CONNECTORS = (DB_POSTGRES, DB_MYSQL)
CONNECTOR_TYPES = MAIL_CONNECTORS + DATABASE_CONNECTORS

SECRET_KEYS = frozenset({"refresh_token", "access_token", "password", "destination_token"})


@dataclass(frozen=True)
class MailCredential:
    """OAuth refresh token of a mailbox."""

    refresh_token: str

    REQUIRED: ClassVar[Tuple[str, ...]] = ("refresh_token",)
    SECRET_FIELDS: ClassVar[Tuple[str, ...]] = ("refresh_token",)


@dataclass(frozen=True)
class DatabaseCredential:
    """Connection details of a relational database."""

    host: str
    port: str
    username: str
    password: str
    database_name: str

    REQUIRED: ClassVar[Tuple[str, ...]] = ("host", "port", "username", "password", "database_name")
    SECRET_FIELDS: ClassVar[Tuple[str, ...]] = ("password",)


Credential = Union[MailCredential, DatabaseCredential]


def is_mail_connector(connector_type: str) -> bool:
    return connector_type in MAIL_CONNECTORS


def is_database_connector(connector_type: str) -> bool:
    return connector_type in DATABASE_CONNECTORS


def ensure_connector_type(connector_type: str) -> str:
    """Return the connector type or raise `ValidationError` when unknown."""

    if connector_type not in CONNECTOR_TYPES:
        raise ValidationError(
            f"invalid connector type: {connector_type!r}. Supported: {', '.join(CONNECTOR_TYPES)}"
        )
    return connector_type


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def credential_from_input(connector_type: str, input_data: Optional[Mapping[str, Any]]) -> Credential:
    """Parse a credential bag for the given connector type.

    Missing keys become empty strings; use `validate_credential` to enforce
    presence.
    """

    data = input_data or {}
    ensure_connector_type(connector_type)

    if is_mail_connector(connector_type):
        return MailCredential(refresh_token=_text(data.get("refresh_token")))

    return DatabaseCredential(
        host=_text(data.get("host")),
        port=_text(data.get("port")),
        username=_text(data.get("username")),
        password=_text(data.get("password")),
        database_name=_text(data.get("database_name")),
    )


def check_credential(credential: Credential, connector_type: str = "") -> Credential:
    """Raise `MissingFieldError` for the first empty required field."""

    for field in credential.REQUIRED:
        if not getattr(credential, field):
            raise MissingFieldError(field, connector_type)
    return credential


def validate_credential(connector_type: str, input_data: Optional[Mapping[str, Any]]) -> Credential:
    """Parse and validate a credential bag.

    Returns:
        Credential: The typed credential.

    Raises:
        ValidationError: Unknown connector type.
        MissingFieldError: A required field is empty.
    """

    return check_credential(credential_from_input(connector_type, input_data), connector_type)


def credential_to_storage(
    credential: Credential,
    sealer: SecretSealer,
    *,
    extra: Optional[Mapping[str, Any]] = None,
) -> Tuple[Dict[str, Any], Optional[str]]:
    """Split a credential into the `input_data` JSON and the sealed secrets token.

    Args:
        credential: Typed credential.
        sealer: Secret sealer; when disabled everything stays in `input_data`.
        extra: Additional public fields to keep in `input_data` (e.g. account email).

    Returns:
        Tuple[Dict[str, Any], Optional[str]]: (input_data, secrets_encrypted)
    """

    data: Dict[str, Any] = dict(extra or {})
    data.update(asdict(credential))

    if not sealer.enabled:
        return data, None

    secrets = {field: data.pop(field) for field in credential.SECRET_FIELDS if field in data}
    return data, sealer.seal_dict(secrets)


def credential_from_storage(
    connector_type: str,
    input_data: Optional[Mapping[str, Any]],
    secrets_encrypted: Optional[str],
    sealer: SecretSealer,
) -> Credential:
    """Rebuild a credential from its stored representation."""

    merged: Dict[str, Any] = dict(input_data or {})
    merged.update(sealer.open_dict(secrets_encrypted))
    return credential_from_input(connector_type, merged)


def mask_secret(value: Optional[str]) -> Optional[str]:
    """Replace all but the last 4 characters with `*`.

    Values of 4 characters or fewer are masked entirely.
    """

    if value is None:
        return None
    text = str(value)
    if len(text) <= 4:
        return "*" * len(text)
    return "*" * (len(text) - 4) + text[-4:]


def mask_input_data(input_data: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Return a copy of a credential bag with secret-shaped fields masked."""

    masked: Dict[str, Any] = {}
    for key, value in (input_data or {}).items():
        if key in SECRET_KEYS and value not in (None, ""):
            masked[key] = mask_secret(str(value))
        else:
            masked[key] = value
    return masked
