"""
Types shared by the interaction controller and the protocol engine:
prompt kinds, the interaction session the engine hands out, the closed set of resume results,
and the engine interface the controller depends on.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, Union

from fastapi import Request, Response

logger = logging.getLogger(__name__)


class PromptName(str, Enum):
    LOGIN = "login"
    CONSENT = "consent"
    SELECT_ACCOUNT = "select_account"
    # Engine prompts the controller does not resolve; rendered with the generic view
    OTHER = "other"

    @classmethod
    def parse(cls, name: str) -> "PromptName":
        try:
            prompt = cls(name)
        except ValueError:
            logger.warning("Unhandled prompt %r; rendering generic interaction view", name)
            return cls.OTHER
        return prompt


@dataclass(frozen=True)
class Prompt:
    name: str
    reasons: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> PromptName:
        return PromptName.parse(self.name)


@dataclass(frozen=True)
class PriorSession:
    """A previously authenticated browser session known to the engine."""
    uid: str
    account_id: str


@dataclass(frozen=True)
class InteractionSession:
    uid: str
    prompt: Prompt
    params: dict[str, Any]
    session: PriorSession | None = None
    last_submission: dict[str, Any] = field(default_factory=dict)

    @property
    def client_id(self) -> str | None:
        return self.params.get("client_id")

    @property
    def scopes(self) -> list[str]:
        return [s for s in (self.params.get("scope") or "").split() if s]


@dataclass(frozen=True)
class LoginResult:
    account: str


@dataclass(frozen=True)
class ConsentResult:
    pass


@dataclass(frozen=True)
class SelectAccountResult:
    pass


@dataclass(frozen=True)
class ErrorResult:
    error: str
    description: str


ResumeResult = Union[LoginResult, ConsentResult, SelectAccountResult, ErrorResult]

ACCESS_DENIED = ErrorResult(error="access_denied", description="End-User aborted interaction")


def result_to_payload(result: ResumeResult) -> dict[str, Any]:
    """Wire shape stored by the engine: exactly one top-level key per result kind."""
    if isinstance(result, LoginResult):
        return {"login": {"account": result.account}}
    if isinstance(result, ConsentResult):
        return {"consent": {}}
    if isinstance(result, SelectAccountResult):
        return {"select_account": {}}
    if isinstance(result, ErrorResult):
        return {"error": result.error, "error_description": result.description}
    raise TypeError(f"Not a resume result: {result!r}")


class ProtocolEngine(Protocol):
    """What the interaction controller needs from the OIDC engine."""

    async def interaction_details(self, request: Request) -> InteractionSession:
        ...

    async def interaction_finished(
        self,
        request: Request,
        result: ResumeResult,
        *,
        merge_with_last_submission: bool,
    ) -> Response:
        ...

    async def find_client(self, client_id: str | None) -> Any | None:
        ...
