"""Shared test fixtures for veritype.

Provides a scripted model backend that replays canned responses and records every history it
was sent.
"""

from typing import (
    Any,
    List,
    Sequence,
)

import pytest

from veritype.agent.planner_interface import (
    ModelClient,
    as_response,
)
from veritype.core.schema import (
    Message,
    ModelResponse,
)
from veritype.core.shape import SchemaDescriptor


class ScriptedModel(ModelClient):
    """Replays *responses* in order; fails the test if called more often than scripted."""

    def __init__(self, responses: Sequence[Any]) -> None:
        self.responses = list(responses)
        self.histories: List[List[Message]] = []
        self.manifests: List[List[SchemaDescriptor]] = []

    async def send(
        self,
        history: Sequence[Message],
        manifest: Sequence[SchemaDescriptor],
        output_schema: SchemaDescriptor,
    ) -> ModelResponse:
        self.histories.append(list(history))
        self.manifests.append(list(manifest))
        if not self.responses:
            raise AssertionError("model called more often than scripted")
        return as_response(self.responses.pop(0))

    @property
    def call_count(self) -> int:
        return len(self.histories)


@pytest.fixture
def scripted_model():
    """Factory fixture: ``scripted_model([...responses])``."""
    return ScriptedModel
