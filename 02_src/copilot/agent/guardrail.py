"""In-domain guardrail: keeps the agent on field service topics."""

import random

from pydantic import BaseModel, ValidationError

from ..llm import ILLMProvider, extract_json_object
from ..logging_config import get_logger
from ..models import AgentContext, GuardrailResult, Turn
from ..prompts import GUARDRAIL_INSTRUCTIONS

logger = get_logger(__name__)

DEFLECTIONS = (
    "I’m on the clock for HVAC, plumbing, or electrical—got any leaky pipes or noisy vents for me?",
    "I’m a field service brain. Ask me about gear, not geopolitics.",
    "Happy to help with tools and troubleshooting—what’s the issue in front of you?",
    "Nice try champ, let's focus on the job at the hand first.",
)

GENERIC_DEFLECTION = (
    "I’m focused on field service (HVAC, plumbing, electrical, fire protection). "
    "Please ask about the job or equipment you’re working on."
)


class GuardrailVerdict(BaseModel):
    """Classifier output."""

    is_field_service_question: bool
    reasoning: str = ""


class GuardrailEvaluator:
    """Classifies the latest user turn; blocks the main run until resolved.

    Fails closed: if the classification call or its parsing fails, the turn
    is deflected with GENERIC_DEFLECTION.
    """

    name = "field_service_question"

    def __init__(
        self,
        llm_provider: ILLMProvider,
        model: str | None = None,
        rng: random.Random | None = None,
    ):
        self._llm = llm_provider
        self._model = model
        self._rng = rng or random.Random()

    def _deflect(self, reasoning: str) -> GuardrailResult:
        return GuardrailResult(
            allowed=False,
            deflection_message=self._rng.choice(DEFLECTIONS),
            reasoning=reasoning,
        )

    @staticmethod
    def _fail_closed(reasoning: str) -> GuardrailResult:
        return GuardrailResult(
            allowed=False, deflection_message=GENERIC_DEFLECTION, reasoning=reasoning
        )

    async def evaluate(self, user_turn: Turn, context: AgentContext) -> GuardrailResult:
        text = user_turn.plain_text.strip()
        if not text:
            return self._fail_closed("empty user turn")

        try:
            raw = await self._llm.complete(
                messages=[{"role": "user", "content": text}],
                system=GUARDRAIL_INSTRUCTIONS,
                max_tokens=200,
                model=self._model,
            )
        except Exception as e:
            logger.error(
                f"Guardrail classification failed: {e}",
                extra={"context": {"conversation_id": context.conversation_id}},
            )
            return self._fail_closed(f"classification failed: {e}")

        parsed = extract_json_object(raw)
        try:
            verdict = GuardrailVerdict.model_validate(parsed)
        except ValidationError as e:
            logger.error(
                "Guardrail output unparseable",
                extra={
                    "context": {
                        "conversation_id": context.conversation_id,
                        "raw": (raw or "")[:300],
                        "error": str(e),
                    }
                },
            )
            return self._fail_closed("unparseable classification")

        if verdict.is_field_service_question:
            return GuardrailResult(allowed=True, reasoning=verdict.reasoning)

        logger.info(
            "Guardrail deflected turn",
            extra={
                "context": {
                    "conversation_id": context.conversation_id,
                    "reasoning": verdict.reasoning,
                }
            },
        )
        return self._deflect(verdict.reasoning)
