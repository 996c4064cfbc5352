from __future__ import annotations

import pytest

from app.legalbot.identity import (
    CaseIdentity,
    extract_rol_from_text,
    is_valid_rol,
    libro_tipo_from_rol,
    normalize_rol,
)
from app.legalbot.models import CasePackage


@pytest.mark.parametrize(
    "value, expected",
    [
        ("C-12345-2026", True),
        ("c-1234-2023", True),
        ("1234-2023", True),
        ("C-1234-1989", False),
        ("C-1234-2031", False),
        ("12-3", False),
        ("", False),
        (None, False),
    ],
)
def test_is_valid_rol(value, expected) -> None:
    assert is_valid_rol(value) is expected


def test_normalize_rol_strips_whitespace_and_uppercases() -> None:
    assert normalize_rol(" c - 123 -2024 ") == "C-123-2024"


def test_extract_rol_prefers_lettered_form() -> None:
    text = "Causa 55-2021 acumulada a rol C-1500-2022 del tribunal"
    assert extract_rol_from_text(text) == "C-1500-2022"


def test_extract_rol_skips_out_of_range_years() -> None:
    assert extract_rol_from_text("Expediente 1234-1950 y luego 77-2020") == "77-2020"
    assert extract_rol_from_text("sin identificador") is None


def test_libro_tipo_from_rol() -> None:
    assert libro_tipo_from_rol("C-123-2024") == "c"
    assert libro_tipo_from_rol("123-2024") is None


def test_identity_requires_all_three_fields_to_match() -> None:
    a = CaseIdentity("C-1-2024", " 1º Juzgado Civil de Santiago ", "BANCO / PEREZ")
    b = CaseIdentity("C-1-2024", "1º Juzgado Civil de Santiago", "BANCO / PEREZ")
    c = CaseIdentity("C-1-2024", "2º Juzgado Civil de Santiago", "BANCO / PEREZ")

    assert a == b
    assert a.key() == b.key()
    assert a != c


def test_matches_skips_fields_this_identity_lacks() -> None:
    full = CaseIdentity("C-1-2024", "1º Juzgado Civil de Santiago", "BANCO / PEREZ")

    assert CaseIdentity("c-1-2024").matches(full)
    assert CaseIdentity("C-1-2024", "1º Juzgado Civil de Santiago").matches(full)
    assert not CaseIdentity("C-1-2024", "2º Juzgado Civil de Santiago").matches(full)
    assert not CaseIdentity("C-2-2024").matches(full)
    assert not full.matches(CaseIdentity("C-1-2024"))


def test_package_identity_and_credentials() -> None:
    package = CasePackage.from_dict(
        {
            "rol": " C-10-2024 ",
            "tribunal": "3º Juzgado Civil",
            "jwt_ebook": {"jwt": "abc", "action": "/ebook.php", "param": "dtaDoc"},
            "folios": [{"numero": "2", "foja": "x"}],
        }
    )

    assert package.identity == CaseIdentity("C-10-2024", "3º Juzgado Civil", "")
    assert package.has_credentials() is True
    assert package.folios[0].numero == 2
    assert package.folios[0].foja == 0
    assert CasePackage.from_dict({"rol": "C-10-2024"}).has_credentials() is False
