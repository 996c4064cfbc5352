from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional

ROL_VALID_RE = re.compile(r"^[A-Z]{0,4}-?\d{1,8}-\d{4}$")
ROL_LETTERED_RE = re.compile(r"[A-Z]{1,4}-\d{1,8}-\d{4}")
ROL_BARE_RE = re.compile(r"\d{1,8}-\d{4}")

MIN_ROL_YEAR = 1990
MAX_ROL_YEAR = 2030


def normalize_rol(value: str | None) -> str:
    """Uppercase and strip whitespace from a case identifier."""

    return re.sub(r"\s+", "", value or "").upper()


def is_valid_rol(value: str | None) -> bool:
    rol = normalize_rol(value)
    if len(rol) < 5 or not ROL_VALID_RE.match(rol):
        return False
    year = int(rol.rsplit("-", 1)[1])
    return MIN_ROL_YEAR <= year <= MAX_ROL_YEAR


def extract_rol_from_text(text: str | None) -> Optional[str]:
    """Return the first valid identifier in ``text``; lettered forms win."""

    if not text:
        return None
    upper = text.upper()
    for pattern in (ROL_LETTERED_RE, ROL_BARE_RE):
        for match in pattern.finditer(upper):
            candidate = normalize_rol(match.group(0))
            if is_valid_rol(candidate):
                return candidate
    return None


def libro_tipo_from_rol(rol: str | None) -> Optional[str]:
    match = re.match(r"^([A-Za-z])-", rol or "")
    return match.group(1).lower() if match else None


@dataclass(frozen=True)
class CaseIdentity:
    """The ``(rol, tribunal, caratula)`` triple that names a case.

    Two identities are equal iff all three trimmed fields match. Sharing a
    ``rol`` alone is not enough: the same number is reused across courts.
    """

    rol: str
    tribunal: str = ""
    caratula: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "rol", (self.rol or "").strip())
        object.__setattr__(self, "tribunal", (self.tribunal or "").strip())
        object.__setattr__(self, "caratula", (self.caratula or "").strip())

    def matches(self, other: "CaseIdentity") -> bool:
        """Whether ``other`` names this case. Fields this identity lacks are not checked."""

        if normalize_rol(self.rol) != normalize_rol(other.rol):
            return False
        return all(
            not mine or mine == theirs
            for mine, theirs in ((self.tribunal, other.tribunal), (self.caratula, other.caratula))
        )

    def key(self) -> str:
        return f"{self.rol}|{self.tribunal}|{self.caratula}"

    def to_dict(self) -> dict[str, str]:
        return {"rol": self.rol, "tribunal": self.tribunal, "caratula": self.caratula}

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "CaseIdentity":
        return cls(
            rol=str(data.get("rol") or ""),
            tribunal=str(data.get("tribunal") or ""),
            caratula=str(data.get("caratula") or ""),
        )


__all__ = [
    "CaseIdentity",
    "extract_rol_from_text",
    "is_valid_rol",
    "libro_tipo_from_rol",
    "normalize_rol",
]
