"""Test helpers for kbchat."""

from tests.helpers.fakes import (
    BASE_TIME,
    FakeNavigator,
    FakeTransport,
    client_error,
    make_document,
    make_message,
    make_question,
)

__all__ = [
    "BASE_TIME",
    "FakeNavigator",
    "FakeTransport",
    "client_error",
    "make_document",
    "make_message",
    "make_question",
]
