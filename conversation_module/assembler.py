"""Build the ordered prompt for one exchange."""

from __future__ import annotations

from typing import Iterable, List

from .models import ConversationSession, PromptMessage, Turn, TurnRole


class ConversationAssembler:
    """Turns a session and its history into the role-tagged prompt.

    Output is ``[system directive] + prior turns + [new user turn]``. Deleted
    turns are dropped and the rest are ordered by creation time. The prompt is
    not trimmed to the model's context window.
    """

    def assemble(self, session: ConversationSession, prior_turns: Iterable[Turn], new_text: str) -> List[PromptMessage]:
        prompt = self.context(session, prior_turns)
        prompt.append(PromptMessage(TurnRole.USER, new_text))
        return prompt

    def context(self, session: ConversationSession, prior_turns: Iterable[Turn]) -> List[PromptMessage]:
        """Everything that precedes the new user message."""
        prompt: List[PromptMessage] = []
        if session.system_directive and session.system_directive.strip():
            prompt.append(PromptMessage(TurnRole.SYSTEM, session.system_directive))
        live = [turn for turn in prior_turns if not turn.is_deleted]
        # sorted() is stable, so turns sharing a timestamp keep their stored order.
        live = sorted(live, key=lambda turn: (turn.created_at is None, turn.created_at or 0))
        prompt.extend(PromptMessage(TurnRole.coerce(turn.role), turn.content) for turn in live)
        return prompt
