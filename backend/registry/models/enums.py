"""Enumerated types shared by the commit log, the export reader and the schema."""

import enum


class EntityKind(str, enum.Enum):
    """Registry entity kinds the replay engine knows how to track.

    Payloads are opaque; the kind only routes a record to its output
    collection. Values match the kind names written by the exporters.
    """

    REGISTRY = "Registry"  # TLD configuration
    REGISTRAR = "Registrar"
    REGISTRAR_CONTACT = "RegistrarContact"
    CONTACT = "ContactResource"
    DOMAIN = "DomainBase"
    HOST = "HostResource"
    PREMIUM_LIST = "PremiumList"
    RESERVED_LIST = "ReservedList"

    def __str__(self) -> str:
        return self.value


class MutationType(str, enum.Enum):
    """Kind of change a commit-log mutation applies to one entity."""

    UPSERT = "UPSERT"
    DELETE = "DELETE"
