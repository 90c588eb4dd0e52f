"""Tests for prompt assembly."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from conversation_module.assembler import ConversationAssembler
from conversation_module.models import ConversationSession, PromptMessage, Turn, TurnRole

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _turn(role, content, minutes, **extra):
    return Turn(session_id="s1", role=role, content=content, created_at=T0 + timedelta(minutes=minutes), **extra)


def _session(directive=None):
    return ConversationSession(owner_id="u1", tenant_id="t1", title="Chat", system_directive=directive)


class TestAssemble:
    def test_directive_history_and_new_turn(self):
        prior = [
            _turn(TurnRole.USER, "hi", 1),
            _turn(TurnRole.ASSISTANT, "hello", 2),
        ]
        prompt = ConversationAssembler().assemble(_session("Be brief."), prior, "how are you?")
        assert prompt == [
            PromptMessage(TurnRole.SYSTEM, "Be brief."),
            PromptMessage(TurnRole.USER, "hi"),
            PromptMessage(TurnRole.ASSISTANT, "hello"),
            PromptMessage(TurnRole.USER, "how are you?"),
        ]

    def test_blank_directive_is_omitted(self):
        prompt = ConversationAssembler().assemble(_session("   "), [], "hey")
        assert prompt == [PromptMessage(TurnRole.USER, "hey")]

    def test_deleted_turns_dropped_and_history_sorted(self):
        prior = [
            _turn(TurnRole.ASSISTANT, "second", 2),
            _turn(TurnRole.USER, "gone", 0, is_deleted=True),
            _turn(TurnRole.USER, "first", 1),
        ]
        prompt = ConversationAssembler().assemble(_session(), prior, "third")
        assert [m.content for m in prompt] == ["first", "second", "third"]

    def test_context_excludes_new_message(self):
        prior = [_turn(TurnRole.USER, "hi", 1)]
        context = ConversationAssembler().context(_session("sys"), prior)
        assert [m.role for m in context] == [TurnRole.SYSTEM, TurnRole.USER]

    def test_deterministic(self):
        prior = [_turn(TurnRole.USER, "a", 1), _turn(TurnRole.ASSISTANT, "b", 1)]
        assembler = ConversationAssembler()
        first = assembler.assemble(_session("x"), prior, "c")
        second = assembler.assemble(_session("x"), prior, "c")
        assert first == second
        # equal timestamps keep stored order
        assert [m.content for m in first] == ["x", "a", "b", "c"]


class TestRoleCoercion:
    def test_unknown_role_maps_to_user(self):
        assert TurnRole.coerce("tool") is TurnRole.USER
        assert TurnRole.coerce("Assistant") is TurnRole.ASSISTANT
        assert TurnRole.coerce(TurnRole.SYSTEM) is TurnRole.SYSTEM
