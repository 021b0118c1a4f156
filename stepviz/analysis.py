"""AI explanation and complexity analysis of user programs, backed by Gemini."""

import asyncio
import json
import logging
import re
from typing import Any

import google.generativeai as genai
from pydantic import ValidationError

from .errors import AnalysisNotConfigured, AnalysisUnavailable, MalformedAnalysis, SupersededRequest
from .models import CamelModel

logger = logging.getLogger(__name__)

EXPLANATION_PROMPT = """
Provide a clear, educational explanation of the following Python code or algorithm.
Format your response with the following sections:

# Explanation of the Python Code

## High-Level Purpose
[Explain what the code does overall]

## Key Steps
* [Bullet point for first main step]
* [Bullet point for second main step]
* [Etc.]

## Notable Techniques/Data Structures
* [Bullet point about techniques used]
* [Bullet point about data structures]

## Examples
* Example 1: [Show input/output example]
* Example 2: [Show another example]
* Example 3: [Show edge case if relevant]

## Edge Cases/Limitations
* [Bullet point about limitation]
* [Bullet point about edge case]

Please use proper markdown formatting with bullet points (*) and section headers (##).
Do NOT use double asterisks (**) for emphasis.

Python code:
```python
{code}
```"""

COMPLEXITY_PROMPT = """
Analyze the time and space complexity of the following Python code.
Your response must be a valid JSON object with the following structure:
{{
  "timeComplexity": "O(...)",
  "spaceComplexity": "O(...)",
  "bestCase": "O(...)",
  "worstCase": "O(...)",
  "algorithmName": "...",
  "isKnownAlgorithm": true/false,
  "description": "..."
}}

Only return the JSON object, nothing else.

Python code:
```python
{code}
```"""

EXPLANATION_FALLBACK = "Could not generate explanation. Server error occurred."
NOT_CONFIGURED_EXPLANATION = "Server configuration error. API key not set."

JSON_BLOCK = re.compile(r"\{[\s\S]*\}")


class ComplexityReport(CamelModel):
    time_complexity: str
    space_complexity: str
    best_case: str
    worst_case: str
    algorithm_name: str | None = None
    is_known_algorithm: bool = False
    description: str = ""

    @classmethod
    def unavailable(cls, description):
        return cls(
            time_complexity="Error",
            space_complexity="Error",
            best_case="Error",
            worst_case="Error",
            is_known_algorithm=False,
            description=description,
        )


def extract_report(text):
    """Pull the first ``{...}`` block out of a model reply and validate it."""
    match = JSON_BLOCK.search(text or "")
    if match is None:
        raise MalformedAnalysis("Invalid API response format")
    try:
        return ComplexityReport.model_validate(json.loads(match.group(0)))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise MalformedAnalysis("Failed to parse API response") from exc


class AlgorithmAnalyst:
    """Wraps ``genai.GenerativeModel`` with lazy construction and DI."""

    _LAZY_IMPORT = object()

    def __init__(self, api_key=None, model_name="gemini-1.5-flash", model: Any = _LAZY_IMPORT):
        self.api_key = api_key
        self.model_name = model_name
        self._model = None if model is AlgorithmAnalyst._LAZY_IMPORT else model

    @property
    def configured(self):
        return self._model is not None or bool(self.api_key)

    def model(self):
        if self._model is None:
            if not self.api_key:
                raise AnalysisNotConfigured()
            genai.configure(api_key=self.api_key)
            self._model = genai.GenerativeModel(self.model_name)
        return self._model

    def complete(self, prompt, max_tokens, temperature):
        model = self.model()
        logger.debug("Sending request to %s (max_tokens=%d)", self.model_name, max_tokens)
        try:
            response = model.generate_content(
                prompt,
                generation_config={"max_output_tokens": max_tokens, "temperature": temperature},
            )
            return response.text
        except Exception as exc:
            logger.error("Gemini request failed: %s", exc)
            raise AnalysisUnavailable(f"Server error: {exc}") from exc

    def explain(self, code):
        explanation = self.complete(EXPLANATION_PROMPT.format(code=code), max_tokens=1500, temperature=0.2)
        logger.info("Explanation received, length: %d", len(explanation))
        return explanation

    def analyze_complexity(self, code):
        reply = self.complete(COMPLEXITY_PROMPT.format(code=code), max_tokens=1000, temperature=0.1)
        try:
            return extract_report(reply)
        except MalformedAnalysis:
            logger.error("Could not read a complexity report from the model reply")
            raise


class RequestGate:
    """Debounces AI requests per client.

    A request waits ``delay`` seconds before it is sent; if a newer request
    for the same key arrives meanwhile (or while the call is in flight) the
    older one raises :class:`SupersededRequest` and its result is discarded.
    """

    def __init__(self, delay=1.0, sleep=asyncio.sleep):
        self.delay = delay
        self._sleep = sleep
        self._latest = {}

    def open(self, key):
        ticket = object()
        self._latest[key] = ticket
        return ticket

    def check(self, key, ticket):
        if self._latest.get(key) is not ticket:
            logger.info("Discarding superseded request for %s", key)
            raise SupersededRequest(key)

    def close(self, key, ticket):
        if self._latest.get(key) is ticket:
            del self._latest[key]

    async def run(self, key, func, *args):
        ticket = self.open(key)
        try:
            if self.delay > 0:
                await self._sleep(self.delay)
            self.check(key, ticket)
            result = await asyncio.to_thread(func, *args)
            self.check(key, ticket)
            return result
        finally:
            self.close(key, ticket)
