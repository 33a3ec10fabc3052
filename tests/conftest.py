import pytest

from moderation_gateway.backends import BackendStatusError, ModerationBackend


# Force pytest-anyio to use asyncio backend (avoid requiring 'trio')
@pytest.fixture
def anyio_backend():
    return "asyncio"


class StubBackend(ModerationBackend):
    """Answers from a fixed table; messages starting with 'fail' error out."""

    kind = "stub"

    def __init__(self, answers=None, default="safe"):
        super().__init__(model="stub-model", base_url="http://stub")
        self.answers = answers or {}
        self.default = default
        self.calls = []

    async def _analyze(self, message, system_prompt):
        self.calls.append((message, system_prompt))
        if message.startswith("fail"):
            raise BackendStatusError(500, "boom")
        return self.answers.get(message, self.default)


@pytest.fixture
def stub_backend():
    return StubBackend(answers={
        "buy my course": "unsafe\nS2",
        "i will hurt you": "unsafe\nS1",
    })
