"""
Options - immutable configuration for the client and its operations.

Every recognised option is a field with its default. Option objects are
frozen dataclasses; build a new one to change a value.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, fields
from typing import Any, Mapping, Sequence
from urllib.parse import unquote_plus

from pymongo import monitoring
from pymongo.errors import ConfigurationError as _PyMongoConfigurationError
from pymongo.errors import InvalidURI
from pymongo.uri_parser import parse_uri, parse_userinfo, split_hosts, split_options

from .types import ConfigurationError

__all__ = [
    "AuthMechanism",
    "CursorType",
    "FullDocument",
    "ServerApi",
    "ClientOptions",
    "FindOptions",
    "IndexOptions",
    "IndexModel",
    "ChangeStreamOptions",
    "CreateCollectionOptions",
    "GridFSBucketOptions",
]

DEFAULT_URI = "mongodb://localhost:27017"
SRV_SCHEME = "mongodb+srv://"
SERVER_API_VERSIONS = ("1",)

LISTENER_TYPES = (
    monitoring.CommandListener,
    monitoring.ConnectionPoolListener,
    monitoring.ServerListener,
    monitoring.ServerHeartbeatListener,
    monitoring.TopologyListener,
)


class AuthMechanism(str, enum.Enum):
    """Authentication mechanisms accepted in ``authMechanism``."""

    DEFAULT = "DEFAULT"
    SCRAM_SHA_1 = "SCRAM-SHA-1"
    SCRAM_SHA_256 = "SCRAM-SHA-256"
    MONGODB_X509 = "MONGODB-X509"
    MONGODB_AWS = "MONGODB-AWS"
    MONGODB_OIDC = "MONGODB-OIDC"
    GSSAPI = "GSSAPI"
    PLAIN = "PLAIN"


_NEEDS_USERNAME = frozenset(
    {AuthMechanism.SCRAM_SHA_1, AuthMechanism.SCRAM_SHA_256, AuthMechanism.PLAIN, AuthMechanism.GSSAPI}
)
_EXTERNAL_SOURCE = frozenset({AuthMechanism.MONGODB_X509, AuthMechanism.MONGODB_AWS})


class CursorType(enum.Enum):
    """How a find cursor behaves once it reaches the end of the result set."""

    NON_TAILABLE = "non_tailable"
    TAILABLE = "tailable"
    TAILABLE_AWAIT = "tailable_await"


class FullDocument(str, enum.Enum):
    """The ``fullDocument`` mode of a change stream."""

    DEFAULT = "default"
    UPDATE_LOOKUP = "updateLookup"
    WHEN_AVAILABLE = "whenAvailable"
    REQUIRED = "required"


@dataclass(frozen=True)
class ServerApi:
    """
    Stable API pin sent with every command.

    Attributes:
        version: The stable API version. Only "1" exists.
        strict: Reject commands outside the stable API.
        deprecation_errors: Reject deprecated commands.
    """

    version: str = "1"
    strict: bool | None = None
    deprecation_errors: bool | None = None

    def __post_init__(self) -> None:
        if self.version not in SERVER_API_VERSIONS:
            raise ConfigurationError(
                f"Unsupported server API version {self.version!r}; "
                f"expected one of {', '.join(SERVER_API_VERSIONS)}"
            )


def _parse_uri(uri: str) -> dict[str, Any]:
    """
    Parse a connection string without network access.

    ``parse_uri`` resolves ``mongodb+srv`` names through DNS, so those are
    split here with the parser's own helpers and the SRV name is kept as
    the only node, with no port.
    """
    if not uri.startswith(SRV_SCHEME):
        return parse_uri(uri)

    host_part, _, opts = uri[len(SRV_SCHEME) :].partition("?")
    host_part, _, database = host_part.partition("/")
    userinfo, _, hosts = host_part.rpartition("@")
    username, password = parse_userinfo(userinfo) if userinfo else (None, None)

    nodes = split_hosts(hosts, default_port=None)
    if len(nodes) != 1 or nodes[0][1] is not None:
        raise InvalidURI(f"{SRV_SCHEME} URIs must include one hostname and no port")

    options = dict(split_options(opts)) if opts else {}
    if not any(key.lower() in ("tls", "ssl") for key in options):
        options["tls"] = True

    database = unquote_plus(database).split(".", 1)[0] if database else None
    return {
        "nodelist": nodes,
        "username": username,
        "password": password,
        "database": database,
        "options": options,
    }


# URI option key (as normalised by the parser) -> ClientOptions field.
_URI_FIELDS = {
    "authmechanism": "auth_mechanism",
    "authsource": "auth_source",
    "authmechanismproperties": "auth_mechanism_properties",
    "tls": "tls",
    "tlsallowinvalidcertificates": "tls_allow_invalid_certificates",
    "tlscafile": "tls_ca_file",
    "tlscertificatekeyfile": "tls_certificate_key_file",
    "appname": "app_name",
    "replicaset": "replica_set",
    "directconnection": "direct_connection",
    "maxpoolsize": "max_pool_size",
    "minpoolsize": "min_pool_size",
    "serverselectiontimeoutms": "server_selection_timeout",
    "connecttimeoutms": "connect_timeout",
    "retrywrites": "retry_writes",
    "retryreads": "retry_reads",
}


@dataclass(frozen=True)
class ClientOptions:
    """
    Configuration of a client connection.

    Build it with :meth:`from_uri`; the constructor does not parse ``uri``.

    Attributes:
        uri: The connection string as given.
        hosts: ``host:port`` seeds from the connection string, or the
            unresolved name of a ``mongodb+srv`` string.
        default_database: Database named in the connection string path.
        username: Authentication user.
        password: Authentication password.
        auth_mechanism: Authentication mechanism, or None for the
            server-negotiated default.
        auth_source: Database holding the credentials.
        auth_mechanism_properties: Mechanism-specific properties.
        tls: Whether TLS is enabled.
        tls_allow_invalid_certificates: Skip certificate validation.
        tls_ca_file: CA bundle path.
        tls_certificate_key_file: Client certificate path.
        server_api: Stable API pin.
        app_name: Application name reported in the handshake.
        replica_set: Required replica set name.
        direct_connection: Connect to a single host without discovery.
        max_pool_size: Pool ceiling per server (0 means unbounded).
        min_pool_size: Pool floor per server.
        server_selection_timeout: Seconds to wait for a suitable server.
        connect_timeout: Seconds to wait for a new connection.
        retry_writes: Let the driver retry retryable writes once.
        retry_reads: Let the driver retry retryable reads once.
        event_listeners: Driver event listeners: command, connection pool,
            server, heartbeat and topology (see ``docstore.monitoring``).
        overrides: Fields given as keyword overrides to :meth:`from_uri`;
            None when the options were built directly.
    """

    uri: str = DEFAULT_URI
    hosts: tuple[str, ...] = ("localhost:27017",)
    default_database: str | None = None
    username: str | None = None
    password: str | None = field(default=None, repr=False)
    auth_mechanism: AuthMechanism | None = None
    auth_source: str | None = None
    auth_mechanism_properties: Mapping[str, Any] | None = None
    tls: bool = False
    tls_allow_invalid_certificates: bool = False
    tls_ca_file: str | None = None
    tls_certificate_key_file: str | None = None
    server_api: ServerApi | None = None
    app_name: str | None = None
    replica_set: str | None = None
    direct_connection: bool | None = None
    max_pool_size: int = 100
    min_pool_size: int = 0
    server_selection_timeout: float = 30.0
    connect_timeout: float = 20.0
    retry_writes: bool = True
    retry_reads: bool = True
    event_listeners: tuple[Any, ...] = ()
    overrides: frozenset[str] | None = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._validate_credentials()

        if not self.tls and (
            self.tls_allow_invalid_certificates or self.tls_ca_file or self.tls_certificate_key_file
        ):
            raise ConfigurationError("TLS options were given but TLS is not enabled")

        if self.direct_connection and len(self.hosts) > 1:
            raise ConfigurationError("direct_connection requires exactly one host")

        if self.min_pool_size < 0 or self.max_pool_size < 0:
            raise ConfigurationError("Pool sizes must be non-negative")
        if self.max_pool_size and self.min_pool_size > self.max_pool_size:
            raise ConfigurationError(
                f"min_pool_size ({self.min_pool_size}) exceeds max_pool_size ({self.max_pool_size})"
            )

        if self.server_selection_timeout < 0 or self.connect_timeout < 0:
            raise ConfigurationError("Timeouts must be non-negative")

        if self.server_api is not None and not isinstance(self.server_api, ServerApi):
            raise ConfigurationError("server_api must be a ServerApi instance")

        for listener in self.event_listeners:
            if not isinstance(listener, LISTENER_TYPES):
                raise ConfigurationError(
                    f"{type(listener).__name__} is not a pymongo.monitoring listener"
                )

    def _validate_credentials(self) -> None:
        mechanism = self.auth_mechanism

        if self.password is not None and self.username is None and mechanism is None:
            raise ConfigurationError("A password was given without a username")

        if mechanism is None:
            return

        if mechanism in _NEEDS_USERNAME and not self.username:
            raise ConfigurationError(f"{mechanism.value} requires a username")

        if mechanism is AuthMechanism.MONGODB_X509:
            if self.password is not None:
                raise ConfigurationError("MONGODB-X509 does not accept a password")
            if not self.tls:
                raise ConfigurationError("MONGODB-X509 requires TLS")

        if mechanism in _EXTERNAL_SOURCE and self.auth_source not in (None, "$external"):
            raise ConfigurationError(f"{mechanism.value} requires auth source '$external'")

    @classmethod
    def from_uri(cls, uri: str | None = None, **overrides: Any) -> ClientOptions:
        """
        Parse a connection string and merge keyword overrides.

        Keyword overrides use the field names of this class and take
        precedence over values from the connection string.

        Args:
            uri: ``mongodb://`` or ``mongodb+srv://`` connection string.
                A ``mongodb+srv`` name is kept as the only host; the
                driver resolves it when it connects.
            **overrides: Field values that replace the URI's.

        Returns:
            The validated options.

        Raises:
            ConfigurationError: If the URI is malformed, an option is
                unknown, or options conflict.
        """
        uri = uri or DEFAULT_URI

        try:
            parsed = _parse_uri(uri)
        except (_PyMongoConfigurationError, ValueError, TypeError, OSError) as e:
            raise ConfigurationError(f"Invalid connection string: {e}") from e

        values: dict[str, Any] = {
            "uri": uri,
            "hosts": tuple(
                host if port is None else f"{host}:{port}" for host, port in parsed["nodelist"]
            ),
            "default_database": parsed.get("database"),
            "username": parsed.get("username"),
            "password": parsed.get("password"),
        }

        # the parser returns camelCase option names
        uri_options = {key.lower(): value for key, value in parsed["options"].items()}
        for key, name in _URI_FIELDS.items():
            value = uri_options.get(key)
            if value is not None:
                values[name] = value

        known = {f.name for f in fields(cls)} - {"overrides"}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ConfigurationError(f"Unknown client option(s): {', '.join(unknown)}")
        values.update(overrides)

        mechanism = values.get("auth_mechanism")
        if mechanism is not None and not isinstance(mechanism, AuthMechanism):
            try:
                values["auth_mechanism"] = AuthMechanism(str(mechanism).upper())
            except ValueError as e:
                raise ConfigurationError(f"Unknown auth mechanism {mechanism!r}") from e

        values["event_listeners"] = tuple(values.get("event_listeners") or ())
        values["overrides"] = frozenset(overrides)
        return cls(**values)


@dataclass(frozen=True)
class FindOptions:
    """
    Options for a find operation.

    Attributes:
        projection: Fields to include/exclude.
        sort: Sort order, a list of (field, direction) pairs or a mapping.
        skip: Number of documents to skip.
        limit: Maximum number of documents to return (0 means no limit).
        batch_size: Documents per batch; None lets the server decide.
        no_cursor_timeout: Keep the server cursor open while idle.
        cursor_type: Tailable behaviour of the cursor.
        max_time_ms: Server-side time limit for the query.
        max_await_time_ms: How long a tailable-await getMore may block.
        hint: Index name or key document to use.
        allow_disk_use: Let the server spill large sorts to disk.
        comment: Comment attached to the command.
    """

    projection: Any = None
    sort: Any = None
    skip: int = 0
    limit: int = 0
    batch_size: int | None = None
    no_cursor_timeout: bool = False
    cursor_type: CursorType = CursorType.NON_TAILABLE
    max_time_ms: int | None = None
    max_await_time_ms: int | None = None
    hint: Any = None
    allow_disk_use: bool | None = None
    comment: Any = None

    def __post_init__(self) -> None:
        if self.skip < 0:
            raise ConfigurationError("skip must be non-negative")
        if self.limit < 0:
            raise ConfigurationError("limit must be non-negative")
        if self.batch_size is not None and self.batch_size <= 0:
            raise ConfigurationError("batch_size must be positive")
        if self.max_await_time_ms is not None and self.cursor_type is not CursorType.TAILABLE_AWAIT:
            raise ConfigurationError("max_await_time_ms requires a TAILABLE_AWAIT cursor")


@dataclass(frozen=True)
class IndexOptions:
    """
    Options for creating an index.

    Attributes:
        name: Index name; generated from the keys when omitted.
        unique: Reject documents with duplicate keys.
        sparse: Skip documents that lack the indexed fields.
        expire_after_seconds: TTL for documents in the index.
        partial_filter_expression: Only index documents matching this filter.
        hidden: Hide the index from the query planner.
        collation: Collation document.
        weights: Field weights of a text index.
        default_language: Default language of a text index.
    """

    name: str | None = None
    unique: bool = False
    sparse: bool = False
    expire_after_seconds: int | None = None
    partial_filter_expression: Mapping[str, Any] | None = None
    hidden: bool | None = None
    collation: Mapping[str, Any] | None = None
    weights: Mapping[str, int] | None = None
    default_language: str | None = None

    def to_document(self) -> dict[str, Any]:
        """Return the options as fields of a createIndexes index spec."""
        spec: dict[str, Any] = {}
        if self.unique:
            spec["unique"] = True
        if self.sparse:
            spec["sparse"] = True
        if self.expire_after_seconds is not None:
            spec["expireAfterSeconds"] = self.expire_after_seconds
        if self.partial_filter_expression is not None:
            spec["partialFilterExpression"] = dict(self.partial_filter_expression)
        if self.hidden is not None:
            spec["hidden"] = self.hidden
        if self.collation is not None:
            spec["collation"] = dict(self.collation)
        if self.weights is not None:
            spec["weights"] = dict(self.weights)
        if self.default_language is not None:
            spec["default_language"] = self.default_language
        return spec


@dataclass(frozen=True)
class IndexModel:
    """An index to create with ``create_indexes``."""

    keys: str | Sequence[tuple[str, Any]] | Mapping[str, Any]
    options: IndexOptions = field(default_factory=IndexOptions)


@dataclass(frozen=True)
class ChangeStreamOptions:
    """
    Options for opening a change stream.

    Attributes:
        full_document: Whether update events carry the current document.
        full_document_before_change: "off", "whenAvailable" or "required".
        resume_after: Resume token to continue after.
        start_after: Resume token to start after, even past an invalidate.
        start_at_operation_time: Cluster time to start from.
        batch_size: Events per batch.
        max_await_time_ms: How long each getMore may block waiting for events.
        show_expanded_events: Include DDL events such as createIndexes.
    """

    full_document: FullDocument = FullDocument.DEFAULT
    full_document_before_change: str | None = None
    resume_after: Mapping[str, Any] | None = None
    start_after: Mapping[str, Any] | None = None
    start_at_operation_time: Any = None
    batch_size: int | None = None
    max_await_time_ms: int | None = None
    show_expanded_events: bool = False

    def __post_init__(self) -> None:
        starts = [
            self.resume_after is not None,
            self.start_after is not None,
            self.start_at_operation_time is not None,
        ]
        if sum(starts) > 1:
            raise ConfigurationError(
                "resume_after, start_after and start_at_operation_time are mutually exclusive"
            )
        if self.full_document_before_change not in (None, "off", "whenAvailable", "required"):
            raise ConfigurationError(
                f"Invalid full_document_before_change {self.full_document_before_change!r}"
            )

    def to_stage(self) -> dict[str, Any]:
        """Return the body of the ``$changeStream`` stage."""
        stage: dict[str, Any] = {}
        if self.full_document is not FullDocument.DEFAULT:
            stage["fullDocument"] = self.full_document.value
        if self.full_document_before_change is not None:
            stage["fullDocumentBeforeChange"] = self.full_document_before_change
        if self.resume_after is not None:
            stage["resumeAfter"] = self.resume_after
        if self.start_after is not None:
            stage["startAfter"] = self.start_after
        if self.start_at_operation_time is not None:
            stage["startAtOperationTime"] = self.start_at_operation_time
        if self.show_expanded_events:
            stage["showExpandedEvents"] = True
        return stage


@dataclass(frozen=True)
class CreateCollectionOptions:
    """
    Options for explicitly creating a collection.

    Attributes:
        validator: Validation rules, e.g. ``{"$jsonSchema": {...}}``.
        validation_level: "off", "strict" or "moderate".
        validation_action: "error" or "warn".
        capped: Create a capped collection.
        size: Maximum size in bytes of a capped collection.
        max: Maximum number of documents of a capped collection.
        extra: Additional create command fields (timeseries, clusteredIndex, ...).
    """

    validator: Mapping[str, Any] | None = None
    validation_level: str | None = None
    validation_action: str | None = None
    capped: bool = False
    size: int | None = None
    max: int | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.validation_level not in (None, "off", "strict", "moderate"):
            raise ConfigurationError(f"Invalid validation_level {self.validation_level!r}")
        if self.validation_action not in (None, "error", "warn"):
            raise ConfigurationError(f"Invalid validation_action {self.validation_action!r}")
        if self.capped and not self.size:
            raise ConfigurationError("A capped collection requires size")

    def to_document(self) -> dict[str, Any]:
        """Return the options as fields of the create command."""
        spec: dict[str, Any] = {}
        if self.validator is not None:
            spec["validator"] = dict(self.validator)
        if self.validation_level is not None:
            spec["validationLevel"] = self.validation_level
        if self.validation_action is not None:
            spec["validationAction"] = self.validation_action
        if self.capped:
            spec["capped"] = True
            spec["size"] = self.size
            if self.max is not None:
                spec["max"] = self.max
        spec.update(self.extra)
        return spec


@dataclass(frozen=True)
class GridFSBucketOptions:
    """
    Options for a GridFS bucket.

    Attributes:
        bucket_name: Prefix of the ``.files`` and ``.chunks`` collections.
        chunk_size_bytes: Default chunk size for uploads.
    """

    bucket_name: str = "fs"
    chunk_size_bytes: int = 255 * 1024

    def __post_init__(self) -> None:
        if not self.bucket_name:
            raise ConfigurationError("bucket_name must not be empty")
        if self.chunk_size_bytes <= 0:
            raise ConfigurationError("chunk_size_bytes must be positive")
