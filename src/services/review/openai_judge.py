# coding: utf-8
"""
OpenAI-backed accept/reject judgment for review candidates

Fast model, JSON output. Rate limits, connection errors and 5xx surface as
TransientExternalError (retried by the caller); unparsable answers as
ValidationError (candidate skipped).
"""
import json
from typing import Optional, Union

from loguru import logger
from openai import (
    AsyncOpenAI,
    APIConnectionError,
    APITimeoutError,
    InternalServerError,
    RateLimitError,
)

from config.config import MODEL_FAST, OPENAI_API_KEY, OPENAI_BASE_URL
from src.core.exceptions import TransientExternalError, ValidationError
from src.services.review.entities import AIJudgment, DiscoveryCandidate, SellCandidate


JUDGE_SYSTEM_PROMPT = """You review crypto trade candidates produced by a rule-based screener.

For a BUY candidate decide whether it is worth recommending now.
For a SELL candidate decide whether the holder should exit (fully or partially) now.

Be conservative: accept only with clear conviction.

Respond with a JSON object only:
{"accept": true|false, "confidence": <number 0..1>, "reasoning": "<one or two sentences>"}"""


class OpenAIJudge:
    """AIProvider using the chat completions API in JSON mode."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: str = MODEL_FAST,
        temperature: float = 0.2,
        max_tokens: int = 300,
    ):
        self.client = client or AsyncOpenAI(api_key=OPENAI_API_KEY, base_url=OPENAI_BASE_URL)
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        logger.info(f"OpenAI judge initialized (model: {self.model})")

    async def judge(self, candidate: Union[DiscoveryCandidate, SellCandidate]) -> AIJudgment:
        payload = json.dumps(candidate.to_prompt_dict(), default=str)

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                messages=[
                    {"role": "system", "content": JUDGE_SYSTEM_PROMPT},
                    {"role": "user", "content": payload},
                ],
                response_format={"type": "json_object"},
            )
        except (RateLimitError, APIConnectionError, APITimeoutError, InternalServerError) as e:
            raise TransientExternalError(f"OpenAI error: {e}", provider="openai") from e

        content = response.choices[0].message.content or ""
        return self.parse(content, candidate.symbol)

    @staticmethod
    def parse(content: str, symbol: str) -> AIJudgment:
        """Parse the model's JSON answer."""
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Unparsable AI answer for {symbol}: {content[:100]!r}", symbol=symbol) from e

        if not isinstance(data, dict) or "accept" not in data:
            raise ValidationError(f"AI answer for {symbol} lacks 'accept'", symbol=symbol)

        try:
            confidence = float(data.get("confidence", 0.0))
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Bad confidence in AI answer for {symbol}", symbol=symbol) from e

        return AIJudgment(
            accept=bool(data["accept"]),
            confidence=max(0.0, min(1.0, confidence)),
            reasoning=str(data.get("reasoning", "")).strip(),
        )
