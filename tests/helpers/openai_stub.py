"""Test helpers to stub the OpenAI Responses client used by ``pass2.py``.

The stub parses the user-content payload to extract the embedded transaction
JSON object and returns a deterministic decision. Tests provide a ``decide``
callable mapping the transaction dict to a ``(category_slug, confidence,
rationale)`` tuple, or raising to simulate API failures, so the test surface
stays small and focused on inputs/outputs.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

BEGIN = "BEGIN_TRANSACTION_JSON\n"
END = "\nEND_TRANSACTION_JSON"


def extract_transaction(user_content: str) -> dict[str, Any]:
    b = user_content.find(BEGIN)
    e = user_content.rfind(END)
    if b == -1 or e == -1 or e <= b:
        raise AssertionError("pass2: user content missing embedded transaction JSON block")
    return json.loads(user_content[b + len(BEGIN) : e])


class StatusError(Exception):
    """Stand-in for an SDK error carrying an HTTP ``status_code``."""

    def __init__(self, status_code: int) -> None:
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


class OpenAIStub:
    """Minimal stub matching the ``openai.OpenAI`` shape for ``pass2.py``.

    Parameters
    ----------
    decide:
        A callable receiving the transaction mapping and returning a
        ``(category_slug, confidence, rationale)`` tuple, or a raw string to
        send back verbatim. It may raise to simulate a failed call.
    calls_out:
        A list that will be appended with each call's kwargs to allow tests to
        make lightweight assertions about prompts and retries.
    """

    def __init__(
        self,
        decide: Callable[[dict[str, Any]], tuple[str, float, str] | str],
        calls_out: list[dict[str, Any]] | None = None,
    ) -> None:
        self._decide = decide
        self._calls = calls_out if calls_out is not None else []

        class _Responses:
            def __init__(self, outer: OpenAIStub) -> None:
                self._outer = outer

            def create(self, **kwargs):
                self._outer._calls.append(kwargs)
                tx = extract_transaction(kwargs["input"])
                decision = self._outer._decide(tx)

                class _Resp:
                    output_text: str

                resp = _Resp()
                if isinstance(decision, str):
                    resp.output_text = decision
                else:
                    slug, confidence, rationale = decision
                    resp.output_text = json.dumps(
                        {
                            "category_slug": slug,
                            "confidence": float(confidence),
                            "rationale": rationale,
                        }
                    )
                return resp

        self.responses = _Responses(self)

    def __call__(self, *args: Any, **kwargs: Any) -> OpenAIStub:
        # Installed in place of the ``OpenAI`` class: "constructing" it returns the stub.
        self.init_kwargs = kwargs
        return self

    # Expose the captured calls list for assertions
    @property
    def calls(self) -> list[dict[str, Any]]:
        return self._calls


class EmbeddingsStub:
    """Minimal ``openai.OpenAI`` stand-in exposing ``embeddings.create``.

    ``vector_for`` maps each input string to its vector. Items come back in
    reverse order with their ``index`` set, as the API does not promise order.
    """

    def __init__(self, vector_for: Callable[[str], list[float]]) -> None:
        self.calls: list[dict[str, Any]] = []
        outer = self

        class _Item:
            def __init__(self, index: int, embedding: list[float]) -> None:
                self.index = index
                self.embedding = embedding

        class _Resp:
            def __init__(self, data: list[_Item]) -> None:
                self.data = data

        class _Embeddings:
            def create(self, **kwargs):
                outer.calls.append(kwargs)
                items = [_Item(i, vector_for(t)) for i, t in enumerate(kwargs["input"])]
                return _Resp(list(reversed(items)))

        self.embeddings = _Embeddings()

    def __call__(self, *args: Any, **kwargs: Any) -> EmbeddingsStub:
        self.init_kwargs = kwargs
        return self
