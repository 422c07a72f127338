"""Safety guards for a single model turn.

Provides three independent behaviours:
1. Step budget: hard limit on model calls within one turn
2. Repetition detection: the 3rd identical (tool_name, tool_input) within a 10-call sliding window
3. Tool result truncation: middle-truncates results over 1000 words, keeping the first and last 500
"""

import collections
import json


class StepBudgetExhausted(Exception):
    """Raised when a turn has used all of its model calls."""


class RepetitionError(Exception):
    """Raised when the same tool+input fingerprint appears 3+ times in the last 10 calls."""


class StepGuard:
    """Per-turn guard used by the model client's tool loop.

    Usage::

        guard = StepGuard(max_steps=100)

        # Before each model call:
        guard.check_step_budget()              # raises StepBudgetExhausted

        # Before each tool dispatch:
        guard.check_repetition(name, input)    # raises RepetitionError

        # After receiving a tool result:
        result = guard.truncate_tool_result(raw_text)
    """

    def __init__(self, max_steps: int = 100) -> None:
        self.max_steps = max_steps
        self.steps = 0
        self._window: collections.deque[str] = collections.deque(maxlen=10)
        # First repetition steers the model; the second ends the turn
        self.had_repetition_warning = False

    def check_step_budget(self) -> None:
        self.steps += 1
        if self.steps > self.max_steps:
            raise StepBudgetExhausted(f"Step budget of {self.max_steps} model calls exhausted.")

    def check_repetition(self, tool_name: str, tool_input: dict) -> None:
        fingerprint = f"{tool_name}:{json.dumps(tool_input, sort_keys=True, default=str)}"
        self._window.append(fingerprint)
        count = sum(1 for fp in self._window if fp == fingerprint)
        if count >= 3:
            raise RepetitionError(
                f"Repetition detected: '{tool_name}' called 3 times with same args in last 10 calls"
            )

    def reset_window(self) -> None:
        self._window.clear()

    def truncate_tool_result(self, text: str, token_limit: int = 1000) -> str:
        """Middle-truncate *text* if it exceeds *token_limit* words.

        Word count is used as a proxy for token count. When truncation occurs
        the output is ``<first half>\\n[N words omitted]\\n<last half>``.
        """
        words = text.split()
        if len(words) <= token_limit:
            return text
        half = token_limit // 2
        omitted = len(words) - token_limit
        head = " ".join(words[:half])
        tail = " ".join(words[-half:])
        return f"{head}\n[{omitted} words omitted]\n{tail}"
