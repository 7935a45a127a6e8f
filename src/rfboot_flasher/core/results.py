"""
Outcome of an rftool operation.

Actions never raise to the CLI; they hand back an ``OperationResult``
and the CLI decides how to render it.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple


@dataclass
class OperationResult:
    """
    What one action did.

    ``metadata`` carries action-specific values; for an upload these are
    the ``UploadReport`` fields (method, padded_len, start_offset, iv,
    elapsed, phases) plus ``skipped``.
    """
    ok: bool
    operation: str
    port: str = ""
    target: str = ""
    bytes_len: int = 0
    hashes: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    @property
    def skipped(self) -> bool:
        """True when the action decided there was nothing to send."""
        return bool(self.metadata.get("skipped"))

    def upload_rows(self) -> List[Tuple[str, str]]:
        """
        (field, value) pairs describing a finished upload, for a table.

        Fields the action did not report are left out.
        """
        meta = self.metadata
        rows = []
        if self.port:
            rows.append(("Port", self.port))
        if self.target:
            rows.append(("Target", self.target))
        if self.bytes_len:
            size = f"{self.bytes_len:,} bytes"
            if "padded_len" in meta:
                size += f" ({meta['padded_len']:,} padded)"
            rows.append(("Size", size))
        if "method" in meta:
            rows.append(("Method", meta["method"]))
        if meta.get("start_offset"):
            rows.append(("Start offset", str(meta["start_offset"])))
        if "iv" in meta:
            v0, v1 = meta["iv"]
            rows.append(("IV", f"{{{v0},{v1}}}"))
        if "elapsed" in meta:
            rows.append(("Time", f"{meta['elapsed']:.3f} sec"))
        if "sha256" in self.hashes:
            rows.append(("SHA-256", self.hashes["sha256"][:16] + "..."))
        return rows

    @classmethod
    def success(
        cls,
        operation: str,
        port: str = "",
        target: str = "",
        bytes_len: int = 0,
    ) -> "OperationResult":
        return cls(ok=True, operation=operation, port=port, target=target, bytes_len=bytes_len)

    @classmethod
    def failure(cls, operation: str, error: str, port: str = "") -> "OperationResult":
        return cls(ok=False, operation=operation, port=port, errors=[error])
