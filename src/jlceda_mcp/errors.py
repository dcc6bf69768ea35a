from __future__ import annotations

import re
from typing import Any


class RpcError(Exception):
    """Structured fault surfaced to tool callers as ``CODE: message``."""

    def __init__(self, code: str, message: str, data: Any = None) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
        self.data = data

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            payload["data"] = self.data
        return payload


def error_payload(exc: BaseException) -> dict[str, Any]:
    if isinstance(exc, RpcError):
        return {"code": exc.code, "message": exc.message}
    return {"code": type(exc).__name__, "message": str(exc)}


def safe_file_name(name: str, fallback: str = "file") -> str:
    cleaned = re.sub(r"[\\/:*?\"<>|\x00-\x1f]+", "_", name.strip())
    cleaned = cleaned.strip(" .")
    return cleaned[:180] or fallback
