"""
Collaborator Protocols

Contracts for the external capabilities the turn pipeline consumes. The core
depends only on these protocols; infrastructure adapters (or test mocks)
provide the implementations.
"""

from typing import Any, Awaitable, Mapping, Protocol, Sequence, Union

from merchant_copilot.core.domain.models import (
    ConversationContext,
    Entity,
    EntityResult,
    IntentResult,
    SkillResult,
)


class IntentClassifierProtocol(Protocol):
    """Classifies a normalized query into an intent."""

    async def classify_intent(self, normalized_query: str) -> IntentResult: ...


class EntityResolverProtocol(Protocol):
    """Resolves the subject entity a normalized query refers to."""

    async def resolve_entity(
        self, normalized_query: str, context: ConversationContext
    ) -> EntityResult: ...


class EntityCatalogProtocol(Protocol):
    """Read-only access to the full entity catalog."""

    def lookup_entity_catalog(self) -> list[Entity]: ...

    def get_entity(self, entity_id: str) -> Entity | None: ...


class TextGeneratorProtocol(Protocol):
    """Black-box text completion service."""

    async def generate_text(self, prompt: str) -> str: ...


class SkillProtocol(Protocol):
    """
    A named unit of work dispatched by the scheduler.

    Receives the subject entity (None for catalog-wide actions), the task
    parameters and the results of every task that finished before it
    (successful or not). May be sync or async.
    """

    def __call__(
        self,
        subject: Entity | None,
        params: Mapping[str, Any],
        prior_results: Mapping[str, SkillResult],
    ) -> Union[Any, Awaitable[Any]]: ...


class KnownEntitySource(Protocol):
    """Anything exposing a `name` attribute usable as ground truth."""

    name: str


KnownEntities = Sequence[Union[KnownEntitySource, str]]
