"""Read-only view over a page snapshot supplied by the execution host.

The host serializes open shadow roots as declarative
``<template shadowrootmode>`` subtrees, so a parse with ``html.parser``
keeps them inline and a plain CSS selection already reaches into them.
Same-origin frames are parsed as additional roots; cross-origin frames are
skipped without complaint.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup
from bs4.element import Tag
import soupsieve
from soupsieve import SelectorSyntaxError

from .utils import clean_text


@dataclass
class FrameSnapshot:
    url: str
    html: str


@dataclass
class PageSnapshot:
    url: str
    html: str
    title: str = ""
    frames: list[FrameSnapshot] = field(default_factory=list)
    cookies: dict[str, str] = field(default_factory=dict)
    session_storage: dict[str, Any] = field(default_factory=dict)


def _origin(url: str) -> tuple[str, str]:
    parsed = urlparse(url or "")
    return parsed.scheme.lower(), parsed.netloc.lower()


def same_origin(a: str, b: str) -> bool:
    return _origin(a) == _origin(b)


class PageDocument:
    """Parsed page plus its reachable frames, queried as one tree."""

    def __init__(self, snapshot: PageSnapshot) -> None:
        self.snapshot = snapshot
        self.soup = BeautifulSoup(snapshot.html or "", "html.parser")
        self.frames: list[BeautifulSoup] = []
        self.skipped_frames = 0
        for frame in snapshot.frames:
            if frame.url and not same_origin(frame.url, snapshot.url):
                self.skipped_frames += 1
                continue
            self.frames.append(BeautifulSoup(frame.html or "", "html.parser"))

    @property
    def url(self) -> str:
        return self.snapshot.url

    @property
    def title(self) -> str:
        if self.snapshot.title:
            return self.snapshot.title
        title_tag = self.soup.find("title")
        return clean_text(title_tag.get_text()) if title_tag else ""

    @property
    def roots(self) -> list[BeautifulSoup]:
        return [self.soup, *self.frames]

    def select(self, selector: str) -> list[Tag]:
        """Select across the page and its frames; an invalid selector matches nothing."""

        found: list[Tag] = []
        seen: set[int] = set()
        for root in self.roots:
            try:
                matches = root.select(selector)
            except (SelectorSyntaxError, ValueError, NotImplementedError):
                return []
            for tag in matches:
                if id(tag) not in seen:
                    seen.add(id(tag))
                    found.append(tag)
        return found

    def select_one(self, selector: str) -> Optional[Tag]:
        matches = self.select(selector)
        return matches[0] if matches else None

    def select_first(self, selectors: Iterable[str]) -> Optional[Tag]:
        for selector in selectors:
            tag = self.select_one(selector)
            if tag is not None:
                return tag
        return None

    def body_text(self, limit: Optional[int] = None) -> str:
        body = self.soup.body or self.soup
        text = body.get_text(" ", strip=True)
        return text[:limit] if limit else text


def text_of(tag: Optional[Tag]) -> str:
    if tag is None:
        return ""
    return clean_text(tag.get_text(" ", strip=True))


def attr(tag: Tag, name: str) -> str:
    value = tag.get(name)
    if value is None:
        return ""
    if isinstance(value, list):
        return " ".join(value)
    return str(value)


def closest(tag: Tag, selector: str) -> Optional[Tag]:
    node: Any = tag
    while isinstance(node, Tag):
        try:
            if node.name != "[document]" and soupsieve.match(selector, node):
                return node
        except (SelectorSyntaxError, ValueError):
            return None
        node = node.parent
    return None


__all__ = [
    "FrameSnapshot",
    "PageDocument",
    "PageSnapshot",
    "attr",
    "closest",
    "same_origin",
    "text_of",
]
