"""Exception types raised by the agent loop and its resource managers.

Budget exhaustion and stuck verdicts are not errors: they surface as a
``LoopResult.reason`` or a ``StuckVerdict``. Only genuine failures live here.
"""


class AgentLoopError(Exception):
    """Base class for agentloop failures."""

    code = "AGENT_LOOP_ERROR"


class ModelInvocationError(AgentLoopError):
    """Raised when the model provider call fails.

    Recovered by the loop controller unless it trips the circuit breaker.
    """

    code = "MODEL_ERROR"


class ProcessSpawnError(AgentLoopError):
    """Raised when a managed process cannot be spawned or gets no pid."""

    code = "PROCESS_SPAWN_ERROR"

    def __init__(self, name: str, message: str):
        super().__init__(f"Failed to start process '{name}': {message}")
        self.name = name


class CompletionCheckError(AgentLoopError):
    """Raised when a completion strategy itself fails (e.g. a custom predicate throws)."""

    code = "COMPLETION_CHECK_ERROR"
