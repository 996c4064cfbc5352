"""Domain records shared by the capture side and the server pipeline.

``CasePackage`` is the JSON handoff between the two halves; its wire keys
follow the portal vocabulary (``folios``, ``cuadernos``, ``jwt_*``) so the
same document can be produced by the page extractor and consumed by the sync
endpoint without translation.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

from .identity import CaseIdentity


@dataclass(frozen=True)
class JwtRef:
    """An opaque credential plus the endpoint and form field it is posted to."""

    jwt: str
    action: str
    param: str

    def to_dict(self) -> dict[str, str]:
        return {"jwt": self.jwt, "action": self.action, "param": self.param}

    @classmethod
    def from_dict(cls, data: Any) -> Optional["JwtRef"]:
        if not isinstance(data, dict) or not data.get("jwt"):
            return None
        return cls(
            jwt=str(data["jwt"]),
            action=str(data.get("action") or ""),
            param=str(data.get("param") or ""),
        )


@dataclass(frozen=True)
class Cuaderno:
    nombre: str
    jwt: str
    selected: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"nombre": self.nombre, "jwt": self.jwt, "selected": self.selected}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Cuaderno":
        return cls(
            nombre=str(data.get("nombre") or ""),
            jwt=str(data.get("jwt") or ""),
            selected=bool(data.get("selected")),
        )


@dataclass(frozen=True)
class Folio:
    numero: int
    etapa: str = ""
    tramite: str = ""
    desc_tramite: str = ""
    fecha_tramite: str = ""
    foja: int = 0
    jwt_doc_principal: Optional[JwtRef] = None
    jwt_certificado_escrito: Optional[JwtRef] = None
    jwt_georef: Optional[str] = None
    source: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "numero": self.numero,
            "etapa": self.etapa,
            "tramite": self.tramite,
            "desc_tramite": self.desc_tramite,
            "fecha_tramite": self.fecha_tramite,
            "foja": self.foja,
            "jwt_doc_principal": self.jwt_doc_principal.to_dict() if self.jwt_doc_principal else None,
            "jwt_certificado_escrito": (
                self.jwt_certificado_escrito.to_dict() if self.jwt_certificado_escrito else None
            ),
            "jwt_georef": self.jwt_georef,
        }
        if self.source:
            payload["_source"] = self.source
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Folio":
        return cls(
            numero=_as_int(data.get("numero")),
            etapa=str(data.get("etapa") or ""),
            tramite=str(data.get("tramite") or ""),
            desc_tramite=str(data.get("desc_tramite") or ""),
            fecha_tramite=str(data.get("fecha_tramite") or ""),
            foja=_as_int(data.get("foja")),
            jwt_doc_principal=JwtRef.from_dict(data.get("jwt_doc_principal")),
            jwt_certificado_escrito=JwtRef.from_dict(data.get("jwt_certificado_escrito")),
            jwt_georef=data.get("jwt_georef") or None,
            source=data.get("_source") or None,
        )


@dataclass(frozen=True)
class ExhortoData:
    causa_origen: Optional[str] = None
    tribunal_origen: Optional[str] = None
    jwt_causa_origen: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _as_int(value: Any) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 0


_OPTIONAL_TEXT_FIELDS = (
    "libro_tipo",
    "tribunal",
    "estado_adm",
    "procedimiento",
    "procedimiento_raw",
    "etapa",
    "ubicacion",
    "fecha_ingreso",
    "estado_procesal",
    "caratula",
    "materia",
    "jwt_anexos",
    "jwt_receptor",
    "csrf_token",
)


@dataclass(frozen=True)
class CasePackage:
    """Everything the server needs to re-fetch one case's documents."""

    rol: str
    libro_tipo: Optional[str] = None
    tribunal: Optional[str] = None
    estado_adm: Optional[str] = None
    procedimiento: Optional[str] = None
    procedimiento_raw: Optional[str] = None
    etapa: Optional[str] = None
    ubicacion: Optional[str] = None
    fecha_ingreso: Optional[str] = None
    estado_procesal: Optional[str] = None
    caratula: Optional[str] = None
    materia: Optional[str] = None
    fuente: str = "consulta_unificada"
    cookies: Optional[dict[str, str]] = None
    jwt_texto_demanda: Optional[JwtRef] = None
    jwt_certificado_envio: Optional[JwtRef] = None
    jwt_ebook: Optional[JwtRef] = None
    jwt_anexos: Optional[str] = None
    jwt_receptor: Optional[str] = None
    csrf_token: Optional[str] = None
    cuadernos: tuple[Cuaderno, ...] = ()
    folios: tuple[Folio, ...] = ()
    tabs: Optional[dict[str, list[dict[str, str]]]] = None
    exhorto: Optional[ExhortoData] = None
    extracted_at: str = ""
    page_url: str = ""

    @property
    def identity(self) -> CaseIdentity:
        return CaseIdentity(self.rol, self.tribunal or "", self.caratula or "")

    def has_credentials(self) -> bool:
        return bool(
            self.jwt_texto_demanda
            or self.jwt_certificado_envio
            or self.jwt_ebook
            or self.folios
            or self.cuadernos
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"rol": self.rol}
        for name in _OPTIONAL_TEXT_FIELDS:
            payload[name] = getattr(self, name)
        payload.update(
            {
                "fuente": self.fuente,
                "cookies": dict(self.cookies) if self.cookies else None,
                "jwt_texto_demanda": self.jwt_texto_demanda.to_dict() if self.jwt_texto_demanda else None,
                "jwt_certificado_envio": (
                    self.jwt_certificado_envio.to_dict() if self.jwt_certificado_envio else None
                ),
                "jwt_ebook": self.jwt_ebook.to_dict() if self.jwt_ebook else None,
                "cuadernos": [c.to_dict() for c in self.cuadernos],
                "folios": [f.to_dict() for f in self.folios],
                "tabs": self.tabs,
                "exhorto": self.exhorto.to_dict() if self.exhorto else None,
                "extracted_at": self.extracted_at,
                "page_url": self.page_url,
            }
        )
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CasePackage":
        exhorto_raw = data.get("exhorto")
        cookies_raw = data.get("cookies")
        tabs_raw = data.get("tabs")
        kwargs: dict[str, Any] = {
            name: (str(data[name]) if data.get(name) not in (None, "") else None)
            for name in _OPTIONAL_TEXT_FIELDS
        }
        return cls(
            rol=str(data.get("rol") or "").strip(),
            fuente=str(data.get("fuente") or "consulta_unificada"),
            cookies=(
                {str(k): str(v) for k, v in cookies_raw.items() if v}
                if isinstance(cookies_raw, dict)
                else None
            ),
            jwt_texto_demanda=JwtRef.from_dict(data.get("jwt_texto_demanda")),
            jwt_certificado_envio=JwtRef.from_dict(data.get("jwt_certificado_envio")),
            jwt_ebook=JwtRef.from_dict(data.get("jwt_ebook")),
            cuadernos=tuple(
                Cuaderno.from_dict(c) for c in data.get("cuadernos") or [] if isinstance(c, dict)
            ),
            folios=tuple(
                Folio.from_dict(f) for f in data.get("folios") or [] if isinstance(f, dict)
            ),
            tabs=tabs_raw if isinstance(tabs_raw, dict) else None,
            exhorto=(
                ExhortoData(
                    causa_origen=exhorto_raw.get("causa_origen"),
                    tribunal_origen=exhorto_raw.get("tribunal_origen"),
                    jwt_causa_origen=exhorto_raw.get("jwt_causa_origen"),
                )
                if isinstance(exhorto_raw, dict)
                else None
            ),
            extracted_at=str(data.get("extracted_at") or ""),
            page_url=str(data.get("page_url") or ""),
            **kwargs,
        )


@dataclass
class DownloadTask:
    jwt: str
    endpoint: str
    param: str
    filename: str
    document_type: str
    folio: Optional[int] = None
    cuaderno: Optional[str] = None
    fecha: Optional[str] = None
    source_url: str = ""


Payload = Union[bytes, Path]


@dataclass
class CapturedFile:
    """Raw capture from the traffic tap, DOM retrieval or a manual upload.

    ``data`` is either the bytes themselves or a path to a file on disk so
    multi-gigabyte captures never have to sit in memory.
    """

    data: Payload
    url: str = ""
    content_type: str = ""
    method: str = "dom"
    filename: Optional[str] = None
    text: str = ""
    captured_at: str = ""

    @property
    def size(self) -> int:
        if isinstance(self.data, Path):
            return self.data.stat().st_size
        return len(self.data)

    def read_head(self, length: int) -> bytes:
        if isinstance(self.data, Path):
            with self.data.open("rb") as handle:
                return handle.read(length)
        return bytes(self.data[:length])


class SizeTier(str, Enum):
    STANDARD = "standard"
    LARGE = "large"
    TOMO = "tomo"
    MEGA = "mega"


@dataclass
class ValidationResult:
    valid: bool
    reason: Optional[str] = None
    hash: Optional[str] = None
    size_tier: Optional[SizeTier] = None
    error_code: Optional[str] = None
    document_type: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    file: Optional[CapturedFile] = None


__all__ = [
    "CapturedFile",
    "CasePackage",
    "Cuaderno",
    "DownloadTask",
    "ExhortoData",
    "Folio",
    "JwtRef",
    "Payload",
    "SizeTier",
    "ValidationResult",
]
