"""Step engine - drives a run along its flow graph.

State machine:
    step  PENDING -> IN_PROGRESS -> COMPLETED | SKIPPED
    run   IN_PROGRESS -> COMPLETED | CANCELLED

Completing or skipping a step follows the step's outgoing edge in the flow
graph (see app.services.flow_graph). Control steps (parallel branches,
conditional branches, goto, goto destination, terminate) resolve themselves
as soon as they are activated; everything else waits for a person or an
external caller.

Branch bookkeeping lives on the branch row's ``branch_state``:
``selectedPathIds`` and ``completedPathIds``. The run continues past a branch
once every selected path has reached the branch's join node.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import FlowNotFoundError, FlowValidationError, InvalidStateError
from app.core.structured_logging import build_log_context
from app.db.enums import (
    AuditAction,
    FlowRunStatus,
    StepExecutionStatus,
    TerminateStatus,
    WebhookEvent,
)
from app.db.models import Contact, FlowRun, StepExecution
from app.db.types import utcnow
from app.schemas.flow_definition import (
    BranchStep,
    DecisionStep,
    FlowDefinition,
    GotoDestinationStep,
    GotoStep,
    TerminateStep,
    scope_key,
)
from app.services import (
    audit_service,
    condition_service,
    email_service,
    execution_service,
    flow_service,
    magic_link_service,
    role_resolver,
    webhook_service,
)
from app.services.flow_graph import (
    END,
    Edge,
    EdgeKind,
    FlowGraph,
    StepNode,
    branch_of_join,
    join_node,
)

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


@dataclass
class RunCursor:
    """Everything the engine needs while working on one run."""

    db: Session
    run: FlowRun
    definition: FlowDefinition
    graph: FlowGraph
    now: datetime
    actor_id: str | None = None
    actor_email: str | None = None
    rows: dict[str, StepExecution] = field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.run.status == FlowRunStatus.IN_PROGRESS.value


def load_cursor(
    db: Session,
    run: FlowRun,
    actor_id: str | None = None,
    actor_email: str | None = None,
    now: datetime | None = None,
) -> RunCursor:
    definition = flow_service.get_definition(run.flow)
    rows = (
        db.query(StepExecution)
        .filter(StepExecution.flow_run_id == run.id)
        .all()
    )
    return RunCursor(
        db=db,
        run=run,
        definition=definition,
        graph=FlowGraph(definition),
        now=now or utcnow(),
        actor_id=actor_id,
        actor_email=actor_email,
        rows={row.step_id: row for row in rows},
    )


class StepEngine:
    """
    Activation and advancement of steps within a run.

    Methods flush but never commit; the public functions at the bottom of
    this module own the transaction.
    """

    # -- rows -----------------------------------------------------------------

    def _row(self, cursor: RunCursor, node: StepNode) -> StepExecution:
        """Get the row for a node, creating it for nested steps on first entry."""
        row = cursor.rows.get(node.step_id)
        if row is None:
            row = StepExecution(
                flow_run_id=cursor.run.id,
                step_id=node.step_id,
                step_index=node.position,
                branch_path=node.scope,
                status=StepExecutionStatus.PENDING.value,
                iteration=0,
            )
            cursor.db.add(row)
            cursor.db.flush()
            cursor.rows[node.step_id] = row
        return row

    def _assignee(self, cursor: RunCursor, step_id: str) -> tuple[str | None, str | None]:
        return role_resolver.resolve_step_assignee(
            cursor.graph.node(step_id).step,
            cursor.run.role_assignments or {},
            cursor.run.started_by_id,
        )

    def _reset(self, cursor: RunCursor, row: StepExecution) -> None:
        """Return a row to PENDING for another iteration."""
        execution_service.on_step_closed(cursor.db, row)
        jumps = (row.branch_state or {}).get("jumps")
        row.status = StepExecutionStatus.PENDING.value
        row.iteration += 1
        row.started_at = None
        row.completed_at = None
        row.completed_by_id = None
        row.result_data = None
        row.branch_state = {"jumps": jumps} if jumps else None
        row.assigned_to_contact_id, row.assigned_to_user_id = self._assignee(cursor, row.step_id)
        row.due_at = None
        row.reminder_count = 0
        row.last_reminder_sent_at = None
        row.escalated_at = None

    def close_step(
        self,
        cursor: RunCursor,
        row: StepExecution,
        status: StepExecutionStatus,
        result_data: dict | None = None,
        completed_by: str | None = None,
    ) -> None:
        row.status = status.value
        row.completed_at = cursor.now
        row.completed_by_id = completed_by
        if result_data is not None:
            row.result_data = result_data
        execution_service.on_step_closed(cursor.db, row)

    def _skip_open(self, cursor: RunCursor, nodes: list[StepNode]) -> None:
        for node in nodes:
            row = cursor.rows.get(node.step_id)
            if row is not None and row.status in StepExecutionStatus.open_values():
                self.close_step(cursor, row, StepExecutionStatus.SKIPPED, completed_by=SYSTEM_ACTOR)

    def skip_all_open(self, cursor: RunCursor) -> None:
        for row in cursor.rows.values():
            if row.status in StepExecutionStatus.open_values():
                self.close_step(cursor, row, StepExecutionStatus.SKIPPED, completed_by=SYSTEM_ACTOR)

    # -- activation -----------------------------------------------------------

    def activate(self, cursor: RunCursor, step_id: str) -> StepExecution | None:
        """
        Make a step the active one and run its activation side effects.

        A row already IN_PROGRESS (the run initializer creates the first one
        that way) keeps its start time; closed rows start a new iteration.
        """
        if not cursor.is_open:
            return None

        node = cursor.graph.node(step_id)
        step = node.step
        row = self._row(cursor, node)
        if row.status in (StepExecutionStatus.COMPLETED.value, StepExecutionStatus.SKIPPED.value):
            self._reset(cursor, row)
        if row.status == StepExecutionStatus.PENDING.value:
            row.status = StepExecutionStatus.IN_PROGRESS.value
            row.started_at = cursor.now

        contact_id, row.assigned_to_user_id = self._assignee(cursor, step_id)
        row.assigned_to_contact_id = contact_id
        cursor.run.current_step_index = node.top_index
        cursor.db.flush()

        audit_service.log_action(
            cursor.db,
            cursor.run.id,
            AuditAction.STEP_ACTIVATED,
            details={
                "stepId": step.step_id,
                "stepName": step.display_name,
                "stepType": step.type,
                "iteration": row.iteration,
                "branchPath": row.branch_path,
            },
            actor_id=SYSTEM_ACTOR,
        )

        if step.is_control and self._resolve_control(cursor, node, row):
            return row

        if contact_id:
            self._notify_contact(cursor, row, step.display_name, contact_id)
        execution_service.on_step_activated(
            cursor.db, row, step, cursor.definition, cursor.run, now=cursor.now
        )
        return row

    def _notify_contact(
        self, cursor: RunCursor, row: StepExecution, step_name: str, contact_id: str
    ) -> None:
        contact = cursor.db.get(Contact, contact_id)
        if contact is None:
            logger.warning(
                "Assigned contact missing for step %s",
                row.step_id,
                extra=build_log_context(run_id=cursor.run.id, step_execution_id=row.id),
            )
            return
        token = magic_link_service.create_magic_link(cursor.db, row.id, now=cursor.now)
        email_service.send_magic_link(
            cursor.db,
            org_id=cursor.run.organization_id,
            to=contact.email,
            contact_name=contact.name,
            step_name=step_name,
            flow_name=cursor.run.flow.name,
            token=token,
            flow_run_id=cursor.run.id,
            step_execution_id=row.id,
        )

    def _resolve_control(self, cursor: RunCursor, node: StepNode, row: StepExecution) -> bool:
        """Auto-resolve a control step. Returns False when it must wait for input."""
        step = node.step

        if isinstance(step, GotoDestinationStep):
            self.close_step(cursor, row, StepExecutionStatus.COMPLETED, completed_by=SYSTEM_ACTOR)
            self._follow(cursor, cursor.graph.continuation(node.step_id))
            return True

        if isinstance(step, GotoStep):
            self._goto(cursor, node, row)
            return True

        if isinstance(step, TerminateStep):
            self._terminate(cursor, node, row)
            return True

        if isinstance(step, BranchStep):
            if step.is_parallel:
                path_ids = [path.path_id for path in step.paths]
            else:
                context = condition_service.build_context(cursor.db, cursor.run, cursor.definition)
                path_ids = condition_service.select_paths(step, context)
            if not path_ids:
                logger.info(
                    "No path matched for branch %s, waiting for a manual selection",
                    step.step_id,
                    extra=build_log_context(run_id=cursor.run.id, step_execution_id=row.id),
                )
                return False
            self.fan_out(cursor, node, row, path_ids, completed_by=SYSTEM_ACTOR)
            return True

        return False

    # -- advancement ----------------------------------------------------------

    def _follow(self, cursor: RunCursor, edge: Edge | None) -> None:
        if edge is None or not cursor.is_open:
            return
        if edge.target == END:
            self._complete_run(cursor)
        elif edge.kind == EdgeKind.JOIN:
            self._complete_path(cursor, branch_of_join(edge.target), edge.label)
        else:
            self.activate(cursor, edge.target)

    def advance(self, cursor: RunCursor, row: StepExecution) -> None:
        """Move on from a step that was just completed or skipped by a caller."""
        node = cursor.graph.node(row.step_id)
        step = node.step

        if isinstance(step, (BranchStep, DecisionStep)):
            if row.status == StepExecutionStatus.SKIPPED.value:
                # A skipped branch enters no paths
                self._follow(cursor, cursor.graph.continuation(join_node(step.step_id)))
            return

        self._follow(cursor, cursor.graph.continuation(step.step_id))

    # -- branches -------------------------------------------------------------

    def fan_out(
        self,
        cursor: RunCursor,
        node: StepNode,
        row: StepExecution,
        path_ids: list[str],
        completed_by: str | None,
        result_data: dict | None = None,
    ) -> None:
        step = node.step
        row.branch_state = {
            "selectedPathIds": list(path_ids),
            "completedPathIds": [],
        }
        result = dict(result_data or {})
        result.setdefault("selectedPathIds", list(path_ids))
        self.close_step(cursor, row, StepExecutionStatus.COMPLETED, result_data=result, completed_by=completed_by)

        # Rows left over from an earlier pass through unselected paths
        for path in step.child_paths():
            if path.path_id not in path_ids:
                self._skip_open(
                    cursor,
                    cursor.graph.scope_nodes(scope_key(node.scope, step.step_id, path.path_id)),
                )

        audit_service.log_action(
            cursor.db,
            cursor.run.id,
            AuditAction.BRANCH_RESOLVED,
            details={"stepId": step.step_id, "selectedPathIds": list(path_ids)},
            actor_id=completed_by,
        )

        for path_id in path_ids:
            if not cursor.is_open:
                return
            edge = cursor.graph.path_entry(step.step_id, path_id)
            if edge is None:
                continue
            if edge.target == join_node(step.step_id):
                self._complete_path(cursor, step.step_id, path_id)
            else:
                self.activate(cursor, edge.target)

    def _complete_path(self, cursor: RunCursor, branch_step_id: str, path_id: str | None) -> None:
        row = cursor.rows.get(branch_step_id)
        if row is None or not cursor.is_open:
            return
        state = dict(row.branch_state or {})
        selected = list(state.get("selectedPathIds") or [])
        completed = list(state.get("completedPathIds") or [])
        if path_id and path_id not in completed:
            completed.append(path_id)
        state["completedPathIds"] = completed
        row.branch_state = state
        cursor.db.flush()

        if set(selected) <= set(completed):
            self._follow(cursor, cursor.graph.continuation(join_node(branch_step_id)))

    def selected_paths(
        self, cursor: RunCursor, step: BranchStep | DecisionStep, result_data: dict[str, Any]
    ) -> list[str]:
        """
        Which paths a human completion of a branch/decision step enters.

        Raises:
            FlowValidationError: Missing or unknown selection.
        """
        valid = [path.path_id for path in step.child_paths()]

        if isinstance(step, DecisionStep):
            outcome_id = result_data.get("outcomeId")
            if outcome_id not in valid:
                raise FlowValidationError("A valid outcomeId is required to complete a decision")
            return [outcome_id]

        if step.is_parallel:
            return valid

        if step.is_multi:
            chosen = result_data.get("selectedPathIds")
            if chosen is None and result_data.get("selectedPathId"):
                chosen = [result_data["selectedPathId"]]
        else:
            chosen = result_data.get("selectedPathId")
            if chosen is None and result_data.get("selectedPathIds"):
                chosen = result_data["selectedPathIds"][:1]
            elif chosen is not None:
                chosen = [chosen]

        if chosen is None and step.has_conditions:
            context = condition_service.build_context(cursor.db, cursor.run, cursor.definition)
            chosen = condition_service.select_paths(step, context)

        if not chosen or not isinstance(chosen, list):
            raise FlowValidationError("A path selection is required to complete this branch")
        unknown = [path_id for path_id in chosen if path_id not in valid]
        if unknown:
            raise FlowValidationError(f"Unknown path id '{unknown[0]}'")
        # Keep definition order, drop duplicates
        return [path_id for path_id in valid if path_id in chosen]

    # -- goto / terminate -----------------------------------------------------

    def _goto(self, cursor: RunCursor, node: StepNode, row: StepExecution) -> None:
        step = node.step
        jumps = int((row.branch_state or {}).get("jumps") or 0)

        if jumps >= settings.MAX_GOTO_ITERATIONS:
            self.close_step(
                cursor,
                row,
                StepExecutionStatus.COMPLETED,
                result_data={"limitReached": True, "jumps": jumps},
                completed_by=SYSTEM_ACTOR,
            )
            audit_service.log_action(
                cursor.db,
                cursor.run.id,
                AuditAction.GOTO_LIMIT_REACHED,
                details={"stepId": step.step_id, "targetStepId": step.target, "jumps": jumps},
                actor_id=SYSTEM_ACTOR,
            )
            logger.warning(
                "Goto %s reached its jump limit",
                step.step_id,
                extra=build_log_context(run_id=cursor.run.id, step_execution_id=row.id),
            )
            self._follow(cursor, cursor.graph.continuation(step.step_id))
            return

        edge = cursor.graph.goto_edge(step.step_id)
        target = cursor.graph.node(edge.target)
        self.close_step(
            cursor,
            row,
            StepExecutionStatus.COMPLETED,
            result_data={"targetStepId": target.step_id},
            completed_by=SYSTEM_ACTOR,
        )
        audit_service.log_action(
            cursor.db,
            cursor.run.id,
            AuditAction.GOTO_JUMPED,
            details={"stepId": step.step_id, "targetStepId": target.step_id, "jump": jumps + 1},
            actor_id=SYSTEM_ACTOR,
        )

        low, high = sorted((target.position, node.position))
        between = [n for n in cursor.graph.main_nodes if low <= n.position <= high]
        if target.position <= node.position:
            # Backward: everything from the destination up to the goto runs again
            for main_node in between:
                for affected_node in [main_node, *cursor.graph.descendants(main_node.step_id)]:
                    affected_row = cursor.rows.get(affected_node.step_id)
                    if affected_row is not None and affected_row.status != StepExecutionStatus.PENDING.value:
                        self._reset(cursor, affected_row)
        else:
            # Forward: steps jumped over are skipped
            for main_node in between:
                if main_node.step_id in (node.step_id, target.step_id):
                    continue
                self._skip_open(
                    cursor, [main_node, *cursor.graph.descendants(main_node.step_id)]
                )

        row.branch_state = {**(row.branch_state or {}), "jumps": jumps + 1}
        cursor.db.flush()
        self.activate(cursor, target.step_id)

    def _terminate(self, cursor: RunCursor, node: StepNode, row: StepExecution) -> None:
        step = node.step
        status = step.status if isinstance(step, TerminateStep) else TerminateStatus.COMPLETED
        if row.status in StepExecutionStatus.open_values():
            self.close_step(
                cursor,
                row,
                StepExecutionStatus.COMPLETED,
                result_data={"status": status.value},
                completed_by=SYSTEM_ACTOR,
            )
        self.skip_all_open(cursor)

        run = cursor.run
        run.status = (
            FlowRunStatus.CANCELLED.value
            if status == TerminateStatus.CANCELLED
            else FlowRunStatus.COMPLETED.value
        )
        run.completed_at = cursor.now
        cursor.db.flush()

        audit_service.log_action(
            cursor.db,
            run.id,
            AuditAction.FLOW_TERMINATED,
            details={"stepId": step.step_id, "status": run.status},
            actor_id=SYSTEM_ACTOR,
        )
        event = (
            WebhookEvent.FLOW_CANCELLED
            if run.status == FlowRunStatus.CANCELLED.value
            else WebhookEvent.FLOW_COMPLETED
        )
        webhook_service.dispatch(
            cursor.db,
            event,
            run,
            cursor.definition,
            metadata={"terminatedBy": step.step_id},
        )
        logger.info(
            "Run terminated with status %s",
            run.status,
            extra=build_log_context(run_id=run.id, flow_id=run.flow_id),
        )

    def _complete_run(self, cursor: RunCursor) -> None:
        run = cursor.run
        self.skip_all_open(cursor)
        run.status = FlowRunStatus.COMPLETED.value
        run.completed_at = cursor.now
        cursor.db.flush()

        audit_service.log_action(
            cursor.db,
            run.id,
            AuditAction.FLOW_COMPLETED,
            details={"flowId": run.flow_id},
            actor_id=SYSTEM_ACTOR,
        )
        webhook_service.dispatch(cursor.db, WebhookEvent.FLOW_COMPLETED, run, cursor.definition)
        logger.info(
            "Run completed",
            extra=build_log_context(run_id=run.id, flow_id=run.flow_id),
        )


engine = StepEngine()


# =============================================================================
# Public operations
# =============================================================================


def get_step_execution(db: Session, step_execution_id: str) -> StepExecution | None:
    return db.query(StepExecution).filter(StepExecution.id == step_execution_id).first()


def _require_open_step(
    db: Session, step_execution_id: str, run_id: str | None = None
) -> StepExecution:
    row = get_step_execution(db, step_execution_id)
    if row is None or (run_id is not None and row.flow_run_id != run_id):
        raise FlowNotFoundError("Step execution not found")
    if row.flow_run.status != FlowRunStatus.IN_PROGRESS.value:
        raise InvalidStateError(f"Run is {row.flow_run.status}")
    if row.status != StepExecutionStatus.IN_PROGRESS.value:
        raise InvalidStateError(f"Step is {row.status}")
    return row


def activate_first_step(
    db: Session,
    run: FlowRun,
    now: datetime | None = None,
) -> StepExecution | None:
    """Run activation side effects for the run's first step. Does not commit."""
    cursor = load_cursor(db, run, now=now)
    first = run.step_executions[0] if run.step_executions else None
    if first is None:
        return None
    return engine.activate(cursor, first.step_id)


def complete_step(
    db: Session,
    step_execution_id: str,
    result_data: dict[str, Any] | None = None,
    actor_id: str | None = None,
    actor_email: str | None = None,
    run_id: str | None = None,
    now: datetime | None = None,
) -> StepExecution:
    """
    Complete an IN_PROGRESS step and advance the run.

    Raises:
        FlowNotFoundError: Unknown step execution.
        InvalidStateError: Step or run is not IN_PROGRESS.
        FlowValidationError: Branch/decision completed without a valid selection.
    """
    row = _require_open_step(db, step_execution_id, run_id)
    run = row.flow_run
    cursor = load_cursor(db, run, actor_id=actor_id, actor_email=actor_email, now=now)
    node = cursor.graph.nodes.get(row.step_id)
    if node is None:
        raise FlowValidationError(f"Step '{row.step_id}' is not part of the flow definition")
    step = node.step
    result_data = dict(result_data or {})

    if isinstance(step, (BranchStep, DecisionStep)):
        path_ids = engine.selected_paths(cursor, step, result_data)
        audit_service.log_action(
            db,
            run.id,
            AuditAction.STEP_COMPLETED,
            details={"stepId": step.step_id, "stepName": step.display_name},
            actor_id=actor_id,
            actor_email=actor_email,
        )
        webhook_service.dispatch(
            db, WebhookEvent.STEP_COMPLETED, run, cursor.definition,
            step_execution=row, step_name=step.display_name,
        )
        engine.fan_out(cursor, node, row, path_ids, completed_by=actor_id, result_data=result_data)
    else:
        engine.close_step(
            cursor, row, StepExecutionStatus.COMPLETED,
            result_data=result_data, completed_by=actor_id,
        )
        audit_service.log_action(
            db,
            run.id,
            AuditAction.STEP_COMPLETED,
            details={"stepId": step.step_id, "stepName": step.display_name},
            actor_id=actor_id,
            actor_email=actor_email,
        )
        webhook_service.dispatch(
            db, WebhookEvent.STEP_COMPLETED, run, cursor.definition,
            step_execution=row, step_name=step.display_name,
        )
        engine.advance(cursor, row)

    execution_service.update_flow_activity(db, run, cursor.now)
    db.commit()
    db.refresh(row)
    logger.info(
        "Step %s completed",
        row.step_id,
        extra=build_log_context(run_id=run.id, step_execution_id=row.id),
    )
    return row


def skip_step(
    db: Session,
    step_execution_id: str,
    actor_id: str | None = None,
    actor_email: str | None = None,
    run_id: str | None = None,
    now: datetime | None = None,
) -> StepExecution:
    """
    Coordinator skip: mark an IN_PROGRESS step SKIPPED and advance.

    Raises:
        FlowNotFoundError: Unknown step execution.
        InvalidStateError: Step or run is not IN_PROGRESS.
    """
    row = _require_open_step(db, step_execution_id, run_id)
    run = row.flow_run
    cursor = load_cursor(db, run, actor_id=actor_id, actor_email=actor_email, now=now)
    if row.step_id not in cursor.graph.nodes:
        raise FlowValidationError(f"Step '{row.step_id}' is not part of the flow definition")

    engine.close_step(cursor, row, StepExecutionStatus.SKIPPED, completed_by=actor_id)
    audit_service.log_action(
        db,
        run.id,
        AuditAction.STEP_SKIPPED,
        details={"stepId": row.step_id},
        actor_id=actor_id,
        actor_email=actor_email,
    )
    engine.advance(cursor, row)

    execution_service.update_flow_activity(db, run, cursor.now)
    db.commit()
    db.refresh(row)
    return row


def cancel_run(
    db: Session,
    run_id: str,
    actor_id: str | None = None,
    actor_email: str | None = None,
    reason: str | None = None,
    now: datetime | None = None,
) -> FlowRun:
    """
    Cancel a run: open steps are skipped and their timers cancelled.

    Raises:
        FlowNotFoundError: Unknown run.
        InvalidStateError: Run already finished.
    """
    run = db.query(FlowRun).filter(FlowRun.id == run_id).first()
    if run is None:
        raise FlowNotFoundError("Flow run not found")
    if run.status != FlowRunStatus.IN_PROGRESS.value:
        raise InvalidStateError(f"Run is {run.status}")

    cursor = load_cursor(db, run, actor_id=actor_id, actor_email=actor_email, now=now)
    engine.skip_all_open(cursor)
    run.status = FlowRunStatus.CANCELLED.value
    run.completed_at = cursor.now
    run.last_activity_at = cursor.now
    db.flush()

    audit_service.log_action(
        db,
        run.id,
        AuditAction.FLOW_CANCELLED,
        details={"reason": reason} if reason else None,
        actor_id=actor_id,
        actor_email=actor_email,
    )
    webhook_service.dispatch(
        db,
        WebhookEvent.FLOW_CANCELLED,
        run,
        cursor.definition,
        metadata={"reason": reason} if reason else None,
    )
    db.commit()
    db.refresh(run)
    logger.info("Run cancelled", extra=build_log_context(run_id=run.id, flow_id=run.flow_id))
    return run
