"""
Email Sequence Service

Drives contacts through multi-step email sequences:
- Sequence and step management
- Enrollment with re-enrollment rules
- Step progression: condition gating, delivery, logging, next send time
- Open/click engagement tracking that feeds later step conditions

A subscriber only advances through a compare-and-swap on its ``version``,
so two workers ticking the same subscriber never send the same step twice.
"""

import logging
import uuid
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import SQLAlchemyError

from growthdesk.config import settings
from growthdesk.core.exceptions import (
    AlreadyEnrolledError,
    EmailDeliveryError,
    GrowthdeskError,
    InvalidStateTransitionError,
    NotFoundError,
    SequenceNotActiveError,
)
from growthdesk.core.scheduling import calculate_next_step_time
from growthdesk.core.tenant_context import TenantScopedService
from growthdesk.models.contact import Contact, ContactStatus
from growthdesk.models.email_sequence import (
    EmailLog,
    EmailLogStatus,
    EmailSequence,
    EmailSequenceStep,
    EmailSequenceSubscriber,
    EmailType,
    SequenceStatus,
    SubscriberStatus,
)
from growthdesk.schemas.email_sequence import (
    AdvanceResult,
    EmailSequenceCreate,
    EnrollmentItem,
    EnrollmentOutcome,
    EnrollmentResult,
    SequenceStatistics,
    SequenceStepCreate,
    StepAction,
    TickSummary,
    dump_conditions,
    parse_conditions,
)
from growthdesk.services.email_service import (
    EmailDeliveryBackend,
    contact_merge_fields,
    get_email_backend,
    render_merge_tags,
)
from growthdesk.services.sequence_conditions import EngagementSnapshot, evaluate

logger = logging.getLogger(__name__)

# Enrollments that still hold a contact's place in a sequence
LIVE_STATUSES = (SubscriberStatus.ACTIVE.value, SubscriberStatus.PAUSED.value)


class EmailSequenceService(TenantScopedService):
    """Service for email sequences of one tenant."""

    def __init__(
        self,
        db,
        tenant_id,
        clock=None,
        email_backend: Optional[EmailDeliveryBackend] = None,
    ):
        super().__init__(db, tenant_id, clock)
        self.email_backend = email_backend or get_email_backend()

    # ========================================================================
    # Counters
    # ========================================================================

    async def _increment(self, model, entity_id: uuid.UUID, **deltas):
        """Atomic counter update, safe against concurrent ticks."""
        await self.db.execute(
            update(model)
            .where(model.id == entity_id, model.tenant_id == self.tenant_id)
            .values({name: getattr(model, name) + delta for name, delta in deltas.items()})
            .execution_options(synchronize_session=False)
        )

    async def _release_active_slot(self, sequence_id: uuid.UUID, completed: bool = False):
        values = {
            "active_subscribers": case(
                (EmailSequence.active_subscribers > 0, EmailSequence.active_subscribers - 1),
                else_=0,
            )
        }
        if completed:
            values["completed_subscribers"] = EmailSequence.completed_subscribers + 1
        await self.db.execute(
            update(EmailSequence)
            .where(EmailSequence.id == sequence_id, EmailSequence.tenant_id == self.tenant_id)
            .values(values)
            .execution_options(synchronize_session=False)
        )

    # ========================================================================
    # Sequence management
    # ========================================================================

    async def get_sequence(self, sequence_id: uuid.UUID) -> EmailSequence:
        return await self._get_or_raise(EmailSequence, sequence_id)

    async def get_steps(self, sequence_id: uuid.UUID) -> List[EmailSequenceStep]:
        result = await self.db.execute(
            self._scoped(EmailSequenceStep)
            .where(EmailSequenceStep.sequence_id == sequence_id)
            .order_by(EmailSequenceStep.position.asc())
        )
        return list(result.scalars().all())

    def _build_step(self, sequence_id: uuid.UUID, data: SequenceStepCreate, position: int) -> EmailSequenceStep:
        return EmailSequenceStep(
            tenant_id=self.tenant_id,
            sequence_id=sequence_id,
            name=data.name,
            position=position,
            subject=data.subject,
            html_content=data.html_content,
            text_content=data.text_content,
            from_name=data.from_name,
            from_email=data.from_email,
            delay_type=data.delay_type.value,
            delay_value=data.delay_value,
            conditions=dump_conditions(data.conditions),
            created_at=self.clock.now(),
        )

    async def create_sequence(self, data: EmailSequenceCreate) -> EmailSequence:
        """
        Create a DRAFT sequence together with its steps.

        Steps without an explicit position are numbered in list order.

        Raises:
            ValueError: If two steps share a position
        """
        positions = [
            step.position if step.position is not None else index
            for index, step in enumerate(data.steps)
        ]
        if len(set(positions)) != len(positions):
            raise ValueError("Sequence steps must have distinct positions")

        async with self.unit_of_work("Sequence"):
            sequence = EmailSequence(
                tenant_id=self.tenant_id,
                name=data.name,
                description=data.description,
                status=SequenceStatus.DRAFT.value,
                trigger=data.trigger.value,
                allow_reenrollment=data.allow_reenrollment,
                stop_on_unsubscribe=data.stop_on_unsubscribe,
                send_time=data.send_time,
                created_at=self.clock.now(),
            )
            self.db.add(sequence)
            await self.db.flush()

            for step_data, position in zip(data.steps, positions):
                self.db.add(self._build_step(sequence.id, step_data, position))

        logger.info(f"Created sequence {sequence.name} with {len(data.steps)} steps")
        return sequence

    async def add_step(self, sequence_id: uuid.UUID, data: SequenceStepCreate) -> EmailSequenceStep:
        """
        Append a step, or insert it at ``data.position`` if that slot is free.

        Raises:
            NotFoundError: If the sequence doesn't exist
            InvalidStateTransitionError: If the sequence is archived
            ValueError: If the position is taken
        """
        sequence = await self.get_sequence(sequence_id)
        if sequence.status == SequenceStatus.ARCHIVED.value:
            raise InvalidStateTransitionError(
                "EmailSequence", sequence.status, sequence.status,
                message="Archived sequences cannot be edited",
            )

        steps = await self.get_steps(sequence_id)
        taken = {s.position for s in steps}
        position = data.position
        if position is None:
            position = max(taken) + 1 if taken else 0
        elif position in taken:
            raise ValueError(f"Sequence {sequence.name} already has a step at position {position}")

        async with self.unit_of_work(f"Sequence {sequence_id}"):
            step = self._build_step(sequence_id, data, position)
            self.db.add(step)

        logger.info(f"Added step {position} to sequence {sequence.name}")
        return step

    async def activate_sequence(self, sequence_id: uuid.UUID) -> EmailSequence:
        """DRAFT or PAUSED -> ACTIVE. A sequence needs at least one step."""
        sequence = await self.get_sequence(sequence_id)
        if sequence.status not in (SequenceStatus.DRAFT.value, SequenceStatus.PAUSED.value):
            raise InvalidStateTransitionError("EmailSequence", sequence.status, SequenceStatus.ACTIVE.value)
        if not await self.get_steps(sequence_id):
            raise InvalidStateTransitionError(
                "EmailSequence", sequence.status, SequenceStatus.ACTIVE.value,
                message=f"Sequence {sequence.name} has no steps",
            )

        sequence.status = SequenceStatus.ACTIVE.value
        await self.db.commit()
        logger.info(f"Activated sequence {sequence.name}")
        return sequence

    async def pause_sequence(self, sequence_id: uuid.UUID) -> EmailSequence:
        """ACTIVE -> PAUSED. Subscribers keep their place and resume with the sequence."""
        sequence = await self.get_sequence(sequence_id)
        if sequence.status != SequenceStatus.ACTIVE.value:
            raise InvalidStateTransitionError("EmailSequence", sequence.status, SequenceStatus.PAUSED.value)

        sequence.status = SequenceStatus.PAUSED.value
        await self.db.commit()
        logger.info(f"Paused sequence {sequence.name}")
        return sequence

    async def get_statistics(self, sequence_id: uuid.UUID) -> SequenceStatistics:
        sequence = await self.get_sequence(sequence_id)
        # Counters are bumped with bulk UPDATEs that bypass the identity map
        await self.db.refresh(sequence)

        completion_rate = Decimal("0.00")
        if sequence.total_enrolled > 0:
            completion_rate = (
                Decimal(sequence.completed_subscribers) * 100 / Decimal(sequence.total_enrolled)
            ).quantize(Decimal("0.01"))

        return SequenceStatistics(
            sequence_id=sequence.id,
            name=sequence.name,
            status=sequence.status,
            total_enrolled=sequence.total_enrolled,
            active_subscribers=sequence.active_subscribers,
            completed_subscribers=sequence.completed_subscribers,
            completion_rate=completion_rate,
        )

    # ========================================================================
    # Enrollment
    # ========================================================================

    async def enroll_contacts(self, sequence_id: uuid.UUID, contact_ids: List[uuid.UUID]) -> EnrollmentResult:
        """
        Enroll many contacts, reporting an outcome per contact.

        Contacts that are missing, not ACTIVE, or already enrolled (without
        ``allow_reenrollment``) are skipped, not failed.

        Raises:
            NotFoundError: If the sequence doesn't exist
            SequenceNotActiveError: If the sequence is not ACTIVE
        """
        sequence = await self.get_sequence(sequence_id)
        if sequence.status != SequenceStatus.ACTIVE.value:
            raise SequenceNotActiveError(sequence_id, sequence.status)

        steps = await self.get_steps(sequence_id)
        result = EnrollmentResult()
        closed = 0

        async with self.unit_of_work(f"Sequence {sequence_id}"):
            for contact_id in contact_ids:
                item, replaced = await self._enroll_one(sequence, steps, contact_id)
                result.items.append(item)
                closed += replaced
                if item.outcome == EnrollmentOutcome.ENROLLED:
                    result.enrolled += 1
                else:
                    result.skipped += 1

            if result.enrolled:
                await self._increment(
                    EmailSequence,
                    sequence.id,
                    total_enrolled=result.enrolled,
                    active_subscribers=result.enrolled - closed,
                )

        logger.info(
            f"Enrolled {result.enrolled} contacts in sequence {sequence.name} "
            f"({result.skipped} skipped)"
        )
        return result

    async def enroll_contact(self, sequence_id: uuid.UUID, contact_id: uuid.UUID) -> EmailSequenceSubscriber:
        """
        Enroll a single contact.

        Raises:
            SequenceNotActiveError: If the sequence is not ACTIVE
            AlreadyEnrolledError: If the contact is enrolled and re-enrollment is off
            NotFoundError: If the contact doesn't exist
            InvalidStateTransitionError: If the contact has unsubscribed or bounced
        """
        result = await self.enroll_contacts(sequence_id, [contact_id])
        item = result.items[0]

        if item.outcome == EnrollmentOutcome.ALREADY_ENROLLED:
            raise AlreadyEnrolledError(sequence_id, contact_id)
        if item.outcome == EnrollmentOutcome.CONTACT_NOT_FOUND:
            raise NotFoundError("Contact", contact_id)
        if item.outcome == EnrollmentOutcome.CONTACT_UNSUBSCRIBED:
            raise InvalidStateTransitionError(
                "Contact", "UNSUBSCRIBED", "ENROLLED",
                message=f"Contact {contact_id} can no longer receive email",
            )
        return await self._get_or_raise(EmailSequenceSubscriber, item.subscriber_id)

    async def _enroll_one(
        self,
        sequence: EmailSequence,
        steps: List[EmailSequenceStep],
        contact_id: uuid.UUID,
    ) -> Tuple[EnrollmentItem, int]:
        """Returns the outcome and how many live enrollments were closed to make room."""
        contact = await self._get(Contact, contact_id)
        if not contact:
            return EnrollmentItem(contact_id=contact_id, outcome=EnrollmentOutcome.CONTACT_NOT_FOUND), 0
        if contact.status != ContactStatus.ACTIVE.value:
            return EnrollmentItem(contact_id=contact_id, outcome=EnrollmentOutcome.CONTACT_UNSUBSCRIBED), 0

        existing = await self.db.execute(
            self._scoped(EmailSequenceSubscriber).where(
                EmailSequenceSubscriber.sequence_id == sequence.id,
                EmailSequenceSubscriber.contact_id == contact_id,
                EmailSequenceSubscriber.status.in_(LIVE_STATUSES),
            )
        )
        live = list(existing.scalars().all())
        if live and not sequence.allow_reenrollment:
            return EnrollmentItem(contact_id=contact_id, outcome=EnrollmentOutcome.ALREADY_ENROLLED), 0

        now = self.clock.now()
        for old in live:
            old.status = SubscriberStatus.UNSUBSCRIBED.value
            old.next_step_at = None

        next_step_at = now
        if steps:
            next_step_at = calculate_next_step_time(
                now, steps[0].delay_type, steps[0].delay_value, sequence.send_time
            )

        subscriber = EmailSequenceSubscriber(
            tenant_id=self.tenant_id,
            sequence_id=sequence.id,
            contact_id=contact_id,
            status=SubscriberStatus.ACTIVE.value,
            current_step=0,
            next_step_at=next_step_at,
            enrolled_at=now,
            version=1,
            created_at=now,
        )
        self.db.add(subscriber)
        # Flush so a duplicate id later in the same call sees this enrollment
        await self.db.flush()

        return EnrollmentItem(
            contact_id=contact_id,
            outcome=EnrollmentOutcome.ENROLLED,
            subscriber_id=subscriber.id,
        ), len(live)

    # ========================================================================
    # Progression
    # ========================================================================

    async def get_subscriber(self, subscriber_id: uuid.UUID) -> EmailSequenceSubscriber:
        return await self._get_or_raise(EmailSequenceSubscriber, subscriber_id)

    async def advance_subscriber(
        self,
        subscriber_id: uuid.UUID,
        expected_version: Optional[int] = None,
    ) -> AdvanceResult:
        """
        Process the subscriber's current step if it is due.

        The subscriber is claimed by bumping ``version`` from
        ``expected_version`` (default: the version read now). If the claim
        misses, because another worker advanced it or it is no longer ACTIVE
        and due, nothing is sent and the result is NOT_DUE. The claim, the
        EmailLog and all counter updates commit together.

        Raises:
            NotFoundError: If the subscriber doesn't exist for this tenant
            ValueError: If the step's stored conditions or delay are malformed
        """
        subscriber = await self.get_subscriber(subscriber_id)
        if expected_version is None:
            expected_version = subscriber.version

        now = self.clock.now()
        not_due = AdvanceResult(
            subscriber_id=subscriber_id,
            action=StepAction.NOT_DUE,
            step_position=subscriber.current_step,
            next_step_at=subscriber.next_step_at,
        )

        if (
            subscriber.status != SubscriberStatus.ACTIVE.value
            or subscriber.next_step_at is None
            or subscriber.next_step_at > now
        ):
            return not_due

        sequence = await self.get_sequence(subscriber.sequence_id)
        if sequence.status != SequenceStatus.ACTIVE.value:
            return not_due

        async with self.unit_of_work(f"Subscriber {subscriber_id}"):
            claim = await self.db.execute(
                update(EmailSequenceSubscriber)
                .where(
                    EmailSequenceSubscriber.id == subscriber_id,
                    EmailSequenceSubscriber.tenant_id == self.tenant_id,
                    EmailSequenceSubscriber.version == expected_version,
                    EmailSequenceSubscriber.status == SubscriberStatus.ACTIVE.value,
                    EmailSequenceSubscriber.next_step_at <= now,
                )
                .values(version=expected_version + 1)
                .execution_options(synchronize_session=False)
            )
            if claim.rowcount != 1:
                logger.debug(f"Subscriber {subscriber_id} claim lost at version {expected_version}")
                return not_due

            reloaded = await self.db.execute(
                self._scoped(EmailSequenceSubscriber)
                .where(EmailSequenceSubscriber.id == subscriber_id)
                .execution_options(populate_existing=True)
            )
            subscriber = reloaded.scalar_one()
            result = await self._advance_claimed(subscriber, sequence, now)

        logger.info(
            f"Subscriber {subscriber_id} step {result.step_position}: {result.action.value}"
        )
        return result

    async def _advance_claimed(
        self,
        subscriber: EmailSequenceSubscriber,
        sequence: EmailSequence,
        now,
    ) -> AdvanceResult:
        position = subscriber.current_step
        contact = await self._get(Contact, subscriber.contact_id)

        reachable = contact is not None and contact.status == ContactStatus.ACTIVE.value
        unsubscribed = contact is not None and contact.status == ContactStatus.UNSUBSCRIBED.value

        # Unsubscribed contacts only stay enrolled (receiving nothing) when the sequence says so
        if not reachable and not (unsubscribed and not sequence.stop_on_unsubscribe):
            halted = SubscriberStatus.UNSUBSCRIBED
            if contact is not None and contact.status == ContactStatus.BOUNCED.value:
                halted = SubscriberStatus.BOUNCED
            await self._close(subscriber, halted)
            return AdvanceResult(
                subscriber_id=subscriber.id, action=StepAction.HALTED, step_position=position
            )

        steps = await self.get_steps(sequence.id)
        if position >= len(steps):
            await self._complete(subscriber, now)
            return AdvanceResult(
                subscriber_id=subscriber.id,
                action=StepAction.COMPLETED,
                step_position=position,
                completed=True,
            )

        step = steps[position]
        conditions = parse_conditions(step.conditions)
        previous = steps[position - 1] if position > 0 else None
        snapshot = await self._engagement_snapshot(subscriber, previous, contact)

        log = None
        if reachable and evaluate(conditions, snapshot):
            log = await self._send_step(subscriber, sequence, step, contact, now)
            action = StepAction.SENT if log.status == EmailLogStatus.SENT.value else StepAction.DELIVERY_FAILED
        else:
            await self._increment(EmailSequenceStep, step.id, skipped_count=1)
            action = StepAction.SKIPPED
            logger.debug(f"Subscriber {subscriber.id} skipped step {position}: conditions not met")

        subscriber.current_step = position + 1
        completed = subscriber.current_step >= len(steps)
        if completed:
            await self._complete(subscriber, now)
        else:
            upcoming = steps[subscriber.current_step]
            subscriber.next_step_at = calculate_next_step_time(
                now, upcoming.delay_type, upcoming.delay_value, sequence.send_time
            )

        await self.db.flush()
        return AdvanceResult(
            subscriber_id=subscriber.id,
            action=action,
            step_position=position,
            completed=completed,
            next_step_at=subscriber.next_step_at,
            email_log_id=log.id if log else None,
        )

    async def _engagement_snapshot(
        self,
        subscriber: EmailSequenceSubscriber,
        previous: Optional[EmailSequenceStep],
        contact: Contact,
    ) -> EngagementSnapshot:
        """Engagement with the previous step's email, plus the contact's tags."""
        tags = contact.tags or []
        if previous is None:
            return EngagementSnapshot.empty(tags)

        result = await self.db.execute(
            self._scoped(EmailLog)
            .where(
                EmailLog.subscriber_id == subscriber.id,
                EmailLog.sequence_step_id == previous.id,
            )
            .order_by(EmailLog.created_at.desc())
            .limit(1)
        )
        log = result.scalar_one_or_none()
        if log is None:
            # Previous step was skipped, nothing was sent to engage with
            return EngagementSnapshot.empty(tags)

        return EngagementSnapshot(
            opened=log.opened_at is not None,
            clicked=log.clicked_at is not None,
            tags=frozenset(tags),
        )

    async def _send_step(
        self,
        subscriber: EmailSequenceSubscriber,
        sequence: EmailSequence,
        step: EmailSequenceStep,
        contact: Contact,
        now,
    ) -> EmailLog:
        fields = contact_merge_fields(contact)
        log = EmailLog(
            tenant_id=self.tenant_id,
            contact_id=contact.id,
            email_type=EmailType.SEQUENCE.value,
            sequence_id=sequence.id,
            sequence_step_id=step.id,
            subscriber_id=subscriber.id,
            status=EmailLogStatus.PENDING.value,
            recipient_email=contact.email,
            subject=render_merge_tags(step.subject, fields),
            html_content=render_merge_tags(step.html_content, fields),
            text_content=render_merge_tags(step.text_content, fields),
            tracking_id=uuid.uuid4().hex,
            created_at=now,
        )
        self.db.add(log)
        await self.db.flush()

        try:
            message_id = await self.email_backend.send(
                contact.email,
                log.subject,
                log.html_content,
                log.text_content,
                from_name=step.from_name,
                from_email=step.from_email,
            )
        except EmailDeliveryError as e:
            log.status = EmailLogStatus.FAILED.value
            log.error_message = str(e)
            logger.warning(f"Delivery of step {step.position} to {contact.email} failed: {e}")
            return log

        log.status = EmailLogStatus.SENT.value
        log.message_id = message_id
        log.sent_at = now
        subscriber.emails_sent += 1
        subscriber.last_email_sent_at = now
        await self._increment(EmailSequenceStep, step.id, sent_count=1)
        return log

    async def _complete(self, subscriber: EmailSequenceSubscriber, now):
        subscriber.status = SubscriberStatus.COMPLETED.value
        subscriber.completed_at = now
        subscriber.next_step_at = None
        await self._release_active_slot(subscriber.sequence_id, completed=True)
        logger.info(f"Subscriber {subscriber.id} completed sequence {subscriber.sequence_id}")

    async def _close(self, subscriber: EmailSequenceSubscriber, status: SubscriberStatus):
        subscriber.status = status.value
        subscriber.next_step_at = None
        await self._release_active_slot(subscriber.sequence_id)

    async def process_due_subscribers(self, limit: Optional[int] = None) -> TickSummary:
        """
        One polling tick: advance every due subscriber of ACTIVE sequences.

        A failure for one subscriber is logged and counted; the tick goes on.
        """
        limit = limit or settings.SEQUENCE_BATCH_SIZE
        now = self.clock.now()

        result = await self.db.execute(
            select(EmailSequenceSubscriber.id, EmailSequenceSubscriber.version)
            .join(EmailSequence, EmailSequence.id == EmailSequenceSubscriber.sequence_id)
            .where(
                EmailSequenceSubscriber.tenant_id == self.tenant_id,
                EmailSequenceSubscriber.status == SubscriberStatus.ACTIVE.value,
                EmailSequenceSubscriber.next_step_at <= now,
                EmailSequence.tenant_id == self.tenant_id,
                EmailSequence.status == SequenceStatus.ACTIVE.value,
            )
            .order_by(EmailSequenceSubscriber.next_step_at.asc())
            .limit(limit)
        )
        due = result.all()

        summary = TickSummary()
        for subscriber_id, version in due:
            summary.processed += 1
            try:
                outcome = await self.advance_subscriber(subscriber_id, version)
            except (GrowthdeskError, SQLAlchemyError, ValueError) as e:
                logger.error(f"Failed to advance subscriber {subscriber_id}: {e}")
                summary.failed += 1
                continue

            if outcome.action == StepAction.SENT:
                summary.sent += 1
            elif outcome.action == StepAction.SKIPPED:
                summary.skipped += 1
            elif outcome.action == StepAction.DELIVERY_FAILED:
                summary.failed += 1
            elif outcome.action == StepAction.NOT_DUE:
                summary.not_due += 1
            if outcome.completed or outcome.action == StepAction.COMPLETED:
                summary.completed += 1

        if due:
            logger.info(
                f"Sequence tick for tenant {self.tenant_id}: {summary.processed} processed, "
                f"{summary.sent} sent, {summary.skipped} skipped, {summary.completed} completed, "
                f"{summary.failed} failed"
            )
        return summary

    # ========================================================================
    # Subscriber management
    # ========================================================================

    def _require_subscriber_status(self, subscriber, allowed: tuple, target: SubscriberStatus):
        if subscriber.status not in allowed:
            raise InvalidStateTransitionError("Subscriber", subscriber.status, target.value)

    async def pause_subscriber(self, subscriber_id: uuid.UUID) -> EmailSequenceSubscriber:
        """ACTIVE -> PAUSED."""
        subscriber = await self.get_subscriber(subscriber_id)
        self._require_subscriber_status(subscriber, (SubscriberStatus.ACTIVE.value,), SubscriberStatus.PAUSED)
        subscriber.status = SubscriberStatus.PAUSED.value
        subscriber.version += 1
        await self.db.commit()
        logger.info(f"Paused subscriber {subscriber_id}")
        return subscriber

    async def resume_subscriber(self, subscriber_id: uuid.UUID) -> EmailSequenceSubscriber:
        """PAUSED -> ACTIVE. An overdue step becomes due on the next tick."""
        subscriber = await self.get_subscriber(subscriber_id)
        self._require_subscriber_status(subscriber, (SubscriberStatus.PAUSED.value,), SubscriberStatus.ACTIVE)
        subscriber.status = SubscriberStatus.ACTIVE.value
        subscriber.version += 1
        await self.db.commit()
        logger.info(f"Resumed subscriber {subscriber_id}")
        return subscriber

    async def unsubscribe_subscriber(self, subscriber_id: uuid.UUID) -> EmailSequenceSubscriber:
        """ACTIVE or PAUSED -> UNSUBSCRIBED (terminal)."""
        return await self._terminate(subscriber_id, SubscriberStatus.UNSUBSCRIBED)

    async def mark_bounced(self, subscriber_id: uuid.UUID) -> EmailSequenceSubscriber:
        """ACTIVE or PAUSED -> BOUNCED (terminal)."""
        return await self._terminate(subscriber_id, SubscriberStatus.BOUNCED)

    async def _terminate(self, subscriber_id: uuid.UUID, target: SubscriberStatus) -> EmailSequenceSubscriber:
        subscriber = await self.get_subscriber(subscriber_id)
        self._require_subscriber_status(subscriber, LIVE_STATUSES, target)
        async with self.unit_of_work(f"Subscriber {subscriber_id}"):
            subscriber.version += 1
            await self._close(subscriber, target)
        logger.info(f"Subscriber {subscriber_id} is now {target.value}")
        return subscriber

    # ========================================================================
    # Engagement tracking
    # ========================================================================

    async def _get_log_by_tracking_id(self, tracking_id: str) -> EmailLog:
        result = await self.db.execute(
            self._scoped(EmailLog).where(EmailLog.tracking_id == tracking_id)
        )
        log = result.scalar_one_or_none()
        if not log:
            raise NotFoundError("EmailLog", tracking_id)
        return log

    async def _mark_opened(self, log: EmailLog, now) -> bool:
        if log.opened_at is not None:
            return False
        log.opened_at = now
        if log.status == EmailLogStatus.SENT.value:
            log.status = EmailLogStatus.OPENED.value
        if log.sequence_step_id:
            await self._increment(EmailSequenceStep, log.sequence_step_id, opened_count=1)
        if log.subscriber_id:
            await self._increment(EmailSequenceSubscriber, log.subscriber_id, emails_opened=1)
        return True

    async def record_open(self, tracking_id: str) -> EmailLog:
        """Record the first open of a sent email. Repeat opens change nothing."""
        log = await self._get_log_by_tracking_id(tracking_id)
        async with self.unit_of_work(f"EmailLog {tracking_id}"):
            opened = await self._mark_opened(log, self.clock.now())
        if opened:
            logger.info(f"Email {tracking_id} opened")
        return log

    async def record_click(self, tracking_id: str) -> EmailLog:
        """Record the first click of a sent email. A click implies an open."""
        log = await self._get_log_by_tracking_id(tracking_id)
        now = self.clock.now()
        async with self.unit_of_work(f"EmailLog {tracking_id}"):
            await self._mark_opened(log, now)
            clicked = log.clicked_at is None
            if clicked:
                log.clicked_at = now
                if log.status in (EmailLogStatus.SENT.value, EmailLogStatus.OPENED.value):
                    log.status = EmailLogStatus.CLICKED.value
                if log.sequence_step_id:
                    await self._increment(EmailSequenceStep, log.sequence_step_id, clicked_count=1)
                if log.subscriber_id:
                    await self._increment(EmailSequenceSubscriber, log.subscriber_id, emails_clicked=1)
        if clicked:
            logger.info(f"Email {tracking_id} clicked")
        return log
