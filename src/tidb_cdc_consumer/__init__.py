"""Reconciling consumer for TiDB change-data-capture streams."""

from .events import CanonicalEvent, Operation, RawMessage, WireProtocol


def main() -> None:
    """Entrypoint proxy that defers importing the service until needed."""

    from .service import main as _service_main

    _service_main()


__all__ = ["CanonicalEvent", "Operation", "RawMessage", "WireProtocol", "main"]
