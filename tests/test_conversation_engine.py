"""
Tests for the Conversation Engine - Verifying Workflow Guarantees.

These tests verify:
1. EVALUATE: approve/deny rules act at once, talk rules open a dialogue
2. REPLIES: ##APPROVE / ##DENY decide, anything else keeps waiting
3. DEADLINES: silence denies, undecided replies time out, both exactly once
4. FAILURES: no action is taken and the owners are told
5. RECOVERY: interrupted side effects are reported, never repeated
6. CONCURRENCY: two handlers racing on one reply apply one action
"""

import asyncio
from datetime import datetime, timedelta

from sqlalchemy import select

from role_approval.clients import parse_inbound
from role_approval.models import (
    Conversation,
    ConversationEvent,
    ConversationEventType,
    ConversationOutcome,
    ConversationState,
    ProcessedReply,
    ReplyCommand,
)
from role_approval.services import (
    NO_RESPONSE_MESSAGE,
    ConversationConfig,
    MessageSendError,
    NoMatchingRuleError,
    PolicyFetchError,
    ReplyEvent,
    ServiceError,
    compose_clarification,
)


OWNER_ADDRESS = "owner@glassfish.dev.java.net"


def reply_to(
    conversation: Conversation,
    body: str,
    received_at: datetime,
    reply_message_id: str = "<reply-1@example.org>",
    from_address: str = "bob@example.org",
) -> ReplyEvent:
    """A reply threaded onto a conversation's clarification e-mail."""
    return ReplyEvent(
        reply_message_id=reply_message_id,
        in_reply_to=conversation.pending_message_id,
        from_address=from_address,
        body=body,
        received_at=received_at,
        subject="observer role request from alice to glassfish",
    )


async def events_of(session_factory, conversation_id) -> list[ConversationEvent]:
    async with session_factory() as session:
        result = await session.execute(
            select(ConversationEvent).where(ConversationEvent.conversation_id == conversation_id)
        )
        return list(result.scalars().all())


async def processed_replies_of(session_factory, conversation_id) -> list[ProcessedReply]:
    async with session_factory() as session:
        result = await session.execute(
            select(ProcessedReply).where(ProcessedReply.conversation_id == conversation_id)
        )
        return list(result.scalars().all())


# =============================================================================
# TEST: MESSAGE COMPOSITION
# =============================================================================


class TestComposeClarification:
    """Building the clarification e-mail from a talk body."""

    def test_plain_body_goes_to_default_address(self, request_for):
        message = compose_clarification("Hello alice", request_for(), OWNER_ADDRESS)

        assert message.to == OWNER_ADDRESS
        assert message.subject == "observer role request from alice to glassfish"
        assert message.body == "Hello alice"

    def test_leading_headers_override_address_and_subject(self, request_for):
        body = (
            "To: leads@glassfish.dev.java.net\n"
            "Subject: alice wants to observe\n"
            "\n"
            "Please reply with ##APPROVE or ##DENY.\n"
        )

        message = compose_clarification(body, request_for(), OWNER_ADDRESS)

        assert message.to == "leads@glassfish.dev.java.net"
        assert message.subject == "alice wants to observe"
        assert message.body == "Please reply with ##APPROVE or ##DENY."

    def test_header_like_text_without_blank_line_is_body(self, request_for):
        message = compose_clarification("Note: alice is new here", request_for(), OWNER_ADDRESS)

        assert message.to == OWNER_ADDRESS
        assert message.body == "Note: alice is new here"


# =============================================================================
# TEST: STARTING A CONVERSATION
# =============================================================================


class TestStartConversation:
    """Policy evaluation when a request comes in."""

    async def test_approve_rule_grants_immediately(self, talk_workflow, request_for):
        wf = talk_workflow

        conversation = await wf.engine.start(request_for(role="developer"))

        assert conversation.state == ConversationState.APPROVED
        assert conversation.outcome == ConversationOutcome.APPROVED
        assert wf.membership.calls == [("grant", "glassfish", "alice", "developer")]
        assert wf.sender.sent == []
        assert wf.policy.fetched == ["glassfish"]

    async def test_deny_rule_declines_with_rendered_body(self, talk_workflow, request_for):
        wf = talk_workflow

        conversation = await wf.engine.start(request_for(role="content developer"))

        assert conversation.state == ConversationState.DENIED
        assert wf.membership.declines == [(
            "decline",
            "glassfish",
            "alice",
            "content developer",
            "Sorry alice, glassfish does not take content developers.\n",
        )]
        assert conversation.decision_reason == (
            "Sorry alice, glassfish does not take content developers.\n"
        )

    async def test_talk_rule_sends_clarification_and_waits(self, talk_workflow, request_for, clock):
        wf = talk_workflow

        conversation = await wf.engine.start(request_for(role="observer"))

        assert conversation.state == ConversationState.AWAITING_REPLY
        assert len(wf.sender.sent) == 1
        sent = wf.sender.sent[0]
        assert sent.to == OWNER_ADDRESS
        assert sent.body == "Hello alice"
        assert sent.subject == "observer role request from alice to glassfish"
        assert conversation.pending_message_id == sent.message_id
        assert conversation.deadline == clock.now + timedelta(days=7)
        assert wf.membership.calls == []

    async def test_start_is_idempotent_on_source_message(self, talk_workflow, request_for):
        wf = talk_workflow
        request = request_for(role="developer")

        first = await wf.engine.start(request)
        second = await wf.engine.start(request)

        assert first.id == second.id
        assert len(wf.membership.grants) == 1

    async def test_history_records_every_step(self, talk_workflow, request_for, session_factory):
        wf = talk_workflow

        conversation = await wf.engine.start(request_for(role="observer"))

        events = await events_of(session_factory, conversation.id)
        assert sorted(e.event_type.value for e in events) == sorted([
            ConversationEventType.CREATED.value,
            ConversationEventType.TRANSITION.value,
            ConversationEventType.TRANSITION.value,
            ConversationEventType.MESSAGE_SENT.value,
        ])
        assert conversation.version == 4


# =============================================================================
# TEST: REPLIES
# =============================================================================


class TestReplies:
    """Owner answers to a clarification e-mail."""

    async def test_approve_reply_grants_and_confirms(self, talk_workflow, request_for, clock):
        wf = talk_workflow
        conversation = await wf.engine.start(request_for())
        clock.advance(timedelta(days=1))

        result = await wf.engine.handle_reply(
            reply_to(conversation, "Sure.\n##APPROVE\n", clock.now)
        )

        assert result.state == ConversationState.APPROVED
        assert result.reply_count == 1
        assert wf.membership.calls == [("grant", "glassfish", "alice", "observer")]

        confirmation = wf.sender.sent[-1]
        assert confirmation.to == "bob@example.org"
        assert confirmation.subject == "Re: observer role request from alice to glassfish"
        assert confirmation.body == "Approving a request based on e-mail from bob@example.org"
        assert confirmation.in_reply_to == "<reply-1@example.org>"

    async def test_deny_reply_declines_with_reply_as_reason(self, talk_workflow, request_for, clock):
        wf = talk_workflow
        conversation = await wf.engine.start(request_for())
        body = "##DENY\nWe are not taking observers right now."

        result = await wf.engine.handle_reply(reply_to(conversation, body, clock.now))

        assert result.state == ConversationState.DENIED
        assert result.decision_reason == body
        assert wf.membership.declines == [("decline", "glassfish", "alice", "observer", body)]
        assert wf.sender.sent[-1].body == (
            "Denying a request based on e-mail from bob@example.org"
        )

    async def test_unrecognized_reply_keeps_waiting(self, talk_workflow, request_for, clock):
        wf = talk_workflow
        conversation = await wf.engine.start(request_for())
        clock.advance(timedelta(days=2))

        result = await wf.engine.handle_reply(
            reply_to(conversation, "I approve this!!", clock.now)
        )

        assert result.state == ConversationState.AWAITING_REPLY
        assert result.reply_count == 1
        assert result.deadline == conversation.deadline
        assert wf.membership.calls == []
        assert len(wf.sender.sent) == 1

    async def test_decision_after_unrecognized_reply(
        self, talk_workflow, request_for, clock, session_factory
    ):
        wf = talk_workflow
        conversation = await wf.engine.start(request_for())

        await wf.engine.handle_reply(
            reply_to(conversation, "Who is alice?", clock.now, "<reply-1@example.org>")
        )
        result = await wf.engine.handle_reply(
            reply_to(conversation, "##APPROVE", clock.now, "<reply-2@example.org>")
        )

        assert result.state == ConversationState.APPROVED
        assert result.reply_count == 2
        replies = await processed_replies_of(session_factory, conversation.id)
        assert sorted(r.command.value for r in replies) == sorted([
            ReplyCommand.UNRECOGNIZED.value,
            ReplyCommand.APPROVE.value,
        ])

    async def test_duplicate_reply_is_processed_once(self, talk_workflow, request_for, clock):
        wf = talk_workflow
        conversation = await wf.engine.start(request_for())
        reply = reply_to(conversation, "Let me check.", clock.now)

        await wf.engine.handle_reply(reply)
        result = await wf.engine.handle_reply(reply)

        assert result.state == ConversationState.AWAITING_REPLY
        assert result.reply_count == 1

    async def test_redelivered_decision_applies_once(self, talk_workflow, request_for, clock):
        wf = talk_workflow
        conversation = await wf.engine.start(request_for())
        reply = reply_to(conversation, "##APPROVE", clock.now)

        await wf.engine.handle_reply(reply)
        result = await wf.engine.handle_reply(reply)

        assert result.state == ConversationState.APPROVED
        assert len(wf.membership.grants) == 1

    async def test_reply_just_before_deadline_is_processed(self, talk_workflow, request_for):
        wf = talk_workflow
        conversation = await wf.engine.start(request_for())

        result = await wf.engine.handle_reply(
            reply_to(conversation, "##APPROVE", conversation.deadline - timedelta(seconds=1))
        )

        assert result.state == ConversationState.APPROVED

    async def test_reply_at_deadline_is_processed(self, talk_workflow, request_for):
        wf = talk_workflow
        conversation = await wf.engine.start(request_for())

        result = await wf.engine.handle_reply(
            reply_to(conversation, "##APPROVE", conversation.deadline)
        )

        assert result.state == ConversationState.APPROVED

    async def test_reply_after_deadline_is_ignored(self, talk_workflow, request_for):
        wf = talk_workflow
        conversation = await wf.engine.start(request_for())

        result = await wf.engine.handle_reply(
            reply_to(conversation, "##APPROVE", conversation.deadline + timedelta(seconds=1))
        )

        assert result.state == ConversationState.AWAITING_REPLY
        assert result.reply_count == 0
        assert wf.membership.calls == []

    async def test_backdated_reply_fetched_after_deadline_is_ignored(
        self, talk_workflow, request_for
    ):
        wf = talk_workflow
        conversation = await wf.engine.start(request_for())
        raw = (
            "From: bob@example.org\n"
            "Subject: Re: observer role request from alice to glassfish\n"
            "Date: Mon, 01 Jan 2001 00:00:00 +0000\n"
            "Message-ID: <backdated@example.org>\n"
            f"In-Reply-To: {conversation.pending_message_id}\n"
            "\n"
            "##APPROVE\n"
        ).encode()
        message = parse_inbound(raw, received_at=conversation.deadline + timedelta(days=3))

        result = await wf.engine.handle_reply(
            ReplyEvent.from_message(message, conversation.pending_message_id)
        )

        assert result.state == ConversationState.AWAITING_REPLY
        assert result.reply_count == 0
        assert wf.membership.calls == []

    async def test_reply_to_unknown_message_is_ignored(self, talk_workflow, clock):
        wf = talk_workflow

        result = await wf.engine.handle_reply(ReplyEvent(
            reply_message_id="<stray@example.org>",
            in_reply_to="<never-sent@example.org>",
            from_address="bob@example.org",
            body="##APPROVE",
            received_at=clock.now,
        ))

        assert result is None
        assert wf.membership.calls == []

    async def test_lenient_matching(self, make_workflow, request_for, clock):
        wf = make_workflow(ConversationConfig(strict_replies=False))
        wf.policy.use_xml('<policy><rule role="observer" action="talk">Hi</rule></policy>')
        conversation = await wf.engine.start(request_for())

        result = await wf.engine.handle_reply(
            reply_to(conversation, "##APPROVE, welcome aboard", clock.now)
        )

        assert result.state == ConversationState.APPROVED

    async def test_failed_confirmation_keeps_decision(self, talk_workflow, request_for, clock):
        wf = talk_workflow
        conversation = await wf.engine.start(request_for())
        wf.sender.fail_with = MessageSendError("relay down")

        result = await wf.engine.handle_reply(reply_to(conversation, "##APPROVE", clock.now))

        assert result.state == ConversationState.APPROVED
        assert len(wf.membership.grants) == 1


# =============================================================================
# TEST: DEADLINES
# =============================================================================


class TestDeadlines:
    """Firing the reply deadline."""

    async def test_silence_denies_with_canned_message(self, talk_workflow, request_for, clock):
        wf = talk_workflow
        conversation = await wf.engine.start(request_for())
        clock.advance(timedelta(days=7))

        result = await wf.engine.handle_deadline(conversation.id)

        assert result.state == ConversationState.DENIED
        assert result.decision_reason == NO_RESPONSE_MESSAGE
        assert wf.membership.declines == [
            ("decline", "glassfish", "alice", "observer", NO_RESPONSE_MESSAGE)
        ]

    async def test_deadline_fires_once(self, talk_workflow, request_for, clock):
        wf = talk_workflow
        conversation = await wf.engine.start(request_for())
        clock.advance(timedelta(days=8))

        await wf.engine.handle_deadline(conversation.id)
        result = await wf.engine.handle_deadline(conversation.id)

        assert result.state == ConversationState.DENIED
        assert len(wf.membership.declines) == 1

    async def test_deadline_not_yet_due_is_a_no_op(self, talk_workflow, request_for, clock):
        wf = talk_workflow
        conversation = await wf.engine.start(request_for())
        clock.advance(timedelta(days=6))

        result = await wf.engine.handle_deadline(conversation.id)

        assert result.state == ConversationState.AWAITING_REPLY
        assert wf.membership.calls == []

    async def test_undecided_replies_time_out_without_action(self, talk_workflow, request_for, clock):
        wf = talk_workflow
        conversation = await wf.engine.start(request_for())
        await wf.engine.handle_reply(reply_to(conversation, "Hmm, not sure.", clock.now))
        clock.advance(timedelta(days=7))

        result = await wf.engine.handle_deadline(conversation.id)

        assert result.state == ConversationState.TIMED_OUT
        assert result.outcome is None
        assert wf.membership.calls == []

    async def test_reply_after_deadline_fired_is_ignored(self, talk_workflow, request_for, clock):
        wf = talk_workflow
        conversation = await wf.engine.start(request_for())
        clock.advance(timedelta(days=7))
        await wf.engine.handle_deadline(conversation.id)

        result = await wf.engine.handle_reply(reply_to(conversation, "##APPROVE", clock.now))

        assert result.state == ConversationState.DENIED
        assert wf.membership.grants == []

    async def test_deadline_after_decision_is_a_no_op(self, talk_workflow, request_for, clock):
        wf = talk_workflow
        conversation = await wf.engine.start(request_for())
        await wf.engine.handle_reply(reply_to(conversation, "##APPROVE", clock.now))
        clock.advance(timedelta(days=7))

        result = await wf.engine.handle_deadline(conversation.id)

        assert result.state == ConversationState.APPROVED
        assert wf.membership.declines == []

    async def test_process_due_deadlines(self, talk_workflow, request_for, clock):
        wf = talk_workflow
        silent = await wf.engine.start(request_for(user="alice"))
        chatty = await wf.engine.start(request_for(user="bob"))
        await wf.engine.handle_reply(reply_to(chatty, "Who is bob?", clock.now))
        clock.advance(timedelta(days=1))
        not_due = await wf.engine.start(request_for(user="carol"))
        clock.advance(timedelta(days=6))

        result = await wf.engine.process_due_deadlines()

        assert result.denied == 1
        assert result.timed_out == 1
        assert result.errors == []
        assert (await wf.engine.get(silent.id)).state == ConversationState.DENIED
        assert (await wf.engine.get(chatty.id)).state == ConversationState.TIMED_OUT
        assert (await wf.engine.get(not_due.id)).state == ConversationState.AWAITING_REPLY


# =============================================================================
# TEST: FAILURES
# =============================================================================


class TestFailures:
    """Errors abort the conversation without acting."""

    async def test_policy_fetch_failure(self, workflow, request_for):
        wf = workflow
        wf.policy.error = PolicyFetchError("404 for role-approval.policy")

        conversation = await wf.engine.start(request_for())

        assert conversation.state == ConversationState.FAILED
        assert "404" in conversation.error_message
        assert wf.membership.calls == []
        assert len(wf.notifier.notifications) == 1
        project, subject, body = wf.notifier.notifications[0]
        assert project == "glassfish"
        assert subject == "Failed to process the observer role request from alice"
        assert "PolicyFetchError" in body

    async def test_no_matching_rule_fails(self, workflow, request_for):
        wf = workflow
        wf.policy.use_xml('<policy><rule role="developer" action="approve"/></policy>')

        conversation = await wf.engine.start(request_for(role="observer"))

        assert conversation.state == ConversationState.FAILED
        assert str(NoMatchingRuleError("observer")) == conversation.error_message
        assert wf.membership.calls == []

    async def test_unknown_action_fails(self, workflow, request_for):
        wf = workflow
        wf.policy.use_xml('<policy><rule role="observer" action="escalate"/></policy>')

        conversation = await wf.engine.start(request_for())

        assert conversation.state == ConversationState.FAILED
        assert wf.membership.calls == []
        assert len(wf.notifier.notifications) == 1

    async def test_send_failure_fails_without_deadline(self, talk_workflow, request_for, clock):
        wf = talk_workflow
        wf.sender.fail_with = MessageSendError("relay down")

        conversation = await wf.engine.start(request_for())

        assert conversation.state == ConversationState.FAILED
        assert conversation.deadline is None
        assert wf.sender.sent == []

        late = await wf.engine.handle_reply(reply_to(conversation, "##APPROVE", clock.now))
        assert late.state == ConversationState.FAILED
        assert wf.membership.calls == []

    async def test_service_failure_fails_after_single_call(self, talk_workflow, request_for):
        wf = talk_workflow
        wf.membership.fail_with = ServiceError("membership service returned 500")

        conversation = await wf.engine.start(request_for(role="developer"))

        assert conversation.state == ConversationState.FAILED
        assert conversation.outcome == ConversationOutcome.APPROVED
        assert len(wf.membership.calls) == 1
        assert len(wf.notifier.notifications) == 1

    async def test_notifier_errors_are_swallowed(self, workflow, request_for):
        wf = workflow
        wf.policy.error = PolicyFetchError("unreachable")
        wf.notifier.raise_error = True

        conversation = await wf.engine.start(request_for())

        assert conversation.state == ConversationState.FAILED


# =============================================================================
# TEST: RECOVERY
# =============================================================================


class TestRecovery:
    """Picking up conversations left mid-step."""

    async def _stranded(self, session_factory, state, role="observer", **values) -> Conversation:
        async with session_factory() as session:
            conversation = Conversation(
                project_name="glassfish",
                role_name=role,
                user_name="alice",
                source_message_id=f"<stranded-{state.value}@dev.java.net>",
                state=state,
                reply_count=0,
                version=3,
                **values,
            )
            session.add(conversation)
            await session.commit()
            return conversation

    async def test_interrupted_send_is_failed_not_resent(self, talk_workflow, session_factory):
        wf = talk_workflow
        stranded = await self._stranded(session_factory, ConversationState.SENDING)

        recovered = await wf.engine.recover()

        assert recovered == 1
        conversation = await wf.engine.get(stranded.id)
        assert conversation.state == ConversationState.FAILED
        assert wf.sender.sent == []
        assert len(wf.notifier.notifications) == 1

    async def test_interrupted_apply_is_failed_not_repeated(self, talk_workflow, session_factory):
        wf = talk_workflow
        stranded = await self._stranded(
            session_factory,
            ConversationState.APPLYING,
            outcome=ConversationOutcome.APPROVED,
        )

        await wf.engine.recover()

        conversation = await wf.engine.get(stranded.id)
        assert conversation.state == ConversationState.FAILED
        assert "approved" in conversation.error_message
        assert wf.membership.calls == []

    async def test_unevaluated_request_is_evaluated(self, talk_workflow, session_factory):
        wf = talk_workflow
        stranded = await self._stranded(session_factory, ConversationState.INIT, role="developer")

        await wf.engine.recover()

        conversation = await wf.engine.get(stranded.id)
        assert conversation.state == ConversationState.APPROVED
        assert wf.membership.grants == [("grant", "glassfish", "alice", "developer")]

    async def test_waiting_and_finished_conversations_are_left_alone(
        self, talk_workflow, request_for
    ):
        wf = talk_workflow
        await wf.engine.start(request_for(role="observer"))
        await wf.engine.start(request_for(role="developer"))

        assert await wf.engine.recover() == 0


# =============================================================================
# TEST: CONCURRENCY
# =============================================================================


class TestConcurrency:
    """Two handlers, one conversation."""

    async def test_racing_engines_apply_one_action(self, make_workflow, request_for, clock):
        first = make_workflow()
        second = make_workflow()
        for wf in (first, second):
            wf.policy.use_xml('<policy><rule role="observer" action="talk">Hi</rule></policy>')
        conversation = await first.engine.start(request_for())
        reply = reply_to(conversation, "##APPROVE", clock.now)

        results = await asyncio.gather(
            first.engine.handle_reply(reply),
            second.engine.handle_reply(reply),
        )

        assert len(first.membership.grants) + len(second.membership.grants) == 1
        final = await first.engine.get(conversation.id)
        assert final.state == ConversationState.APPROVED
        assert all(result is not None for result in results)

    async def test_reply_arriving_while_sending_is_applied(self, talk_workflow, request_for, clock):
        wf = talk_workflow
        seen = {}
        tasks = []

        async def reply_mid_send(message_id):
            if tasks:
                return
            found = await wf.engine.find_by_message_id(message_id)
            seen["state"] = found.state
            tasks.append(asyncio.create_task(wf.engine.handle_reply(ReplyEvent(
                reply_message_id="<quick@example.org>",
                in_reply_to=message_id,
                from_address="bob@example.org",
                body="##APPROVE",
                received_at=clock.now,
            ))))

        wf.sender.during_send = reply_mid_send
        conversation = await wf.engine.start(request_for())
        await asyncio.wait_for(tasks[0], timeout=5)

        assert seen["state"] == ConversationState.SENDING
        assert conversation.state == ConversationState.AWAITING_REPLY
        final = await wf.engine.get(conversation.id)
        assert final.state == ConversationState.APPROVED
        assert final.pending_message_id == wf.sender.sent[0].message_id
        assert len(wf.membership.grants) == 1

    async def test_reply_and_deadline_race(self, talk_workflow, request_for, clock):
        wf = talk_workflow
        conversation = await wf.engine.start(request_for())
        clock.advance(timedelta(days=7))

        await asyncio.gather(
            wf.engine.handle_reply(reply_to(conversation, "##APPROVE", conversation.deadline)),
            wf.engine.handle_deadline(conversation.id),
        )

        final = await wf.engine.get(conversation.id)
        assert final.state in (ConversationState.APPROVED, ConversationState.DENIED)
        assert len(wf.membership.calls) == 1
