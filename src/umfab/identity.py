"""Deterministic instance identity."""

import hashlib


def derive_instance_id(descriptor) -> str:
    """Return the instance id for *descriptor*.

    The id is the md5 hex digest of ``"<host>:<port>"``. One host and port is
    one process, so an instance restarted on the same address reclaims its id.
    """
    key = f"{descriptor.host}:{descriptor.port}"
    return hashlib.md5(key.encode("utf-8"), usedforsecurity=False).hexdigest()
