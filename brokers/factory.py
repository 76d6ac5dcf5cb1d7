"""Factory helpers for broker adapters."""

import importlib


BROKER_CLASSES = {
    "angelone": "AngelOneBroker",
    "dhan": "DhanBroker",
    "fyers": "FyersBroker",
    "upstox": "UpstoxBroker",
}


def normalize_broker_name(broker_name):
    """Return the lookup key for a stored or path broker name.

    ``"Angel One"``, ``"angel_one"`` and ``"ANGEL-ONE"`` all map to
    ``"angelone"``.
    """
    return (
        str(broker_name or "")
        .lower()
        .replace(" ", "")
        .replace("_", "")
        .replace("-", "")
    )


def get_broker_class(broker_name):
    """Return the adapter class for ``broker_name``.

    Raises ``ValueError`` for brokers without an adapter.
    """
    name = normalize_broker_name(broker_name)
    if name not in BROKER_CLASSES:
        raise ValueError(f"Unknown broker: {broker_name}")
    module = importlib.import_module(f".{name}", __package__ or "brokers")
    return getattr(module, BROKER_CLASSES[name])


def supported_brokers():
    return sorted(BROKER_CLASSES)


__all__ = ["normalize_broker_name", "get_broker_class", "supported_brokers"]
