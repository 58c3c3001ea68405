from __future__ import annotations

import asyncio

from agents.intent_agent import IntentAgent
from agents.supervisor_agent import PlanSupervisor, StepOutcome
from models.schemas import ExecutionPlan, PlanStatus, PlanStep, StepStatus

from conftest import ScriptedLLM

PLAN = {
    "actions_required": True,
    "steps": [
        {"step_number": 2, "action": "Book slot", "description": "Append the booking", "tool_to_use": "append_booking_row", "requires_confirmation": True},
        {"step_number": 1, "action": "Check slots", "description": "Read the sheet", "tool_to_use": "check_availability"},
    ],
    "missing_info": [],
}

from conftest import ScriptedLLM


def _supervisor(plans, diagnostics, structured=None):
    return PlanSupervisor(llm=ScriptedLLM(structured=structured), plans=plans, diagnostics=diagnostics)


def test_needs_planning_for_multi_action_messages(plans, diagnostics):
    supervisor = _supervisor(plans, diagnostics)
    intent = IntentAgent(llm=ScriptedLLM(), diagnostics=diagnostics).fallback_intent("hello")
    assert supervisor.needs_planning(intent, "Check Monday then book the earliest slot")
    assert not supervisor.needs_planning(intent, "hello there")


def test_model_plan_is_sorted_and_persisted(plans, diagnostics):
    async def _run():
        supervisor = _supervisor(plans, diagnostics, structured={"create_action_plan": PLAN})
        plan = await supervisor.analyze_and_plan("book me in", [], ["check_availability"], tenant_id="t1", conversation_id="c1")
        assert [s.step_number for s in plan.steps] == [1, 2]
        assert all(s.status == StepStatus.PENDING for s in plan.steps)
        assert plan.status == PlanStatus.READY
        stored = await plans.latest_active_plan("t1", "c1")
        assert stored.plan_id == plan.plan_id

    asyncio.run(_run())


def test_fallback_plan_depends_on_action_keywords(plans, diagnostics):
    async def _run():
        supervisor = _supervisor(plans, diagnostics)
        actionable = await supervisor.analyze_and_plan("please book a visit", [], [], tenant_id="t1")
        assert len(actionable.steps) == 1
        assert actionable.steps[0].action == "Analyze request"
        idle = await supervisor.analyze_and_plan("good morning", [], [], tenant_id="t1")
        assert idle.steps == []
        assert idle.status == PlanStatus.COMPLETED

    asyncio.run(_run())


def test_missing_info_plan_starts_in_needs_info(plans, diagnostics):
    async def _run():
        plan_args = {**PLAN, "missing_info": ["phoneNumber"]}
        supervisor = _supervisor(plans, diagnostics, structured={"create_action_plan": plan_args})
        plan = await supervisor.analyze_and_plan("book", [], [], tenant_id="t1", conversation_id="c1")
        assert plan.status == PlanStatus.NEEDS_INFO
        missing = supervisor.check_missing_info("book", [], plan)
        assert missing.has_all_info is False
        assert missing.missing_fields == ["phoneNumber"]
        assert "1. phoneNumber" in missing.prompt
        assert supervisor.check_missing_info("my phone number is 555", [], plan).has_all_info

    asyncio.run(_run())


def test_track_progress_points_at_next_step(plans, diagnostics):
    async def _run():
        supervisor = _supervisor(plans, diagnostics)
        plan = ExecutionPlan(
            tenant_id="t1",
            steps=[
                PlanStep(step_number=1, action="Collect details", description="name and phone"),
                PlanStep(step_number=2, action="Book", description="append row"),
            ],
        )
        report = await supervisor.track_progress(plan, "ok", [], [StepOutcome(step=1, result="done", success=True)])
        assert report.next_step == 2
        assert report.current_step_guidance == "Focus on: Book - append row"
        assert report.all_steps_completed is False
        failed = await supervisor.track_progress(plan, "ok", [], [StepOutcome(step=1, result="err", success=False)])
        assert failed.next_step == 1

    asyncio.run(_run())


def test_recording_results_supersedes_instead_of_mutating(plans, diagnostics):
    async def _run():
        supervisor = _supervisor(plans, diagnostics, structured={"create_action_plan": PLAN})
        first = await supervisor.analyze_and_plan("book", [], [], tenant_id="t1", conversation_id="c1")
        second = await supervisor.record_step_result(first, 1, success=True)
        assert second.plan_id != first.plan_id
        assert second.supersedes == first.plan_id
        assert second.revision == first.revision + 1
        assert second.steps[0].status == StepStatus.COMPLETED
        assert second.steps[1].status == StepStatus.IN_PROGRESS
        assert second.status == PlanStatus.AWAITING_CONFIRMATION

        old = await plans.get_plan("t1", first.plan_id)
        assert old.status == PlanStatus.SUPERSEDED
        assert old.steps[0].status == StepStatus.PENDING

        confirmed = await supervisor.confirm_step(second, 2)
        assert confirmed.steps[1].confirmed is True
        assert confirmed.status == PlanStatus.EXECUTING
        done = await supervisor.record_step_result(confirmed, 2, success=True)
        assert done.status == PlanStatus.COMPLETED
        assert await plans.latest_active_plan("t1", "c1") is None

    asyncio.run(_run())


def test_step_status_never_moves_backwards(plans, diagnostics):
    async def _run():
        supervisor = _supervisor(plans, diagnostics, structured={"create_action_plan": PLAN})
        plan = await supervisor.analyze_and_plan("book", [], [], tenant_id="t1", conversation_id="c1")
        plan = await supervisor.record_step_result(plan, 1, success=True)
        plan = await supervisor.record_step_result(plan, 1, success=False)
        assert plan.steps[0].status == StepStatus.COMPLETED

    asyncio.run(_run())


def test_three_step_plan_completion(plans, diagnostics):
    async def _run():
        supervisor = _supervisor(plans, diagnostics)
        plan = ExecutionPlan(
            tenant_id="t1",
            steps=[PlanStep(step_number=n, action=f"Step {n}") for n in (1, 2, 3)],
        )
        two_done = [StepOutcome(step=n, result="completed", success=True) for n in (1, 2)]
        partial = await supervisor.track_progress(plan, "next", [], two_done)
        assert partial.next_step == 3
        assert partial.all_steps_completed is False
        all_done = two_done + [StepOutcome(step=3, result="completed", success=True)]
        finished = await supervisor.track_progress(plan, "thanks", [], all_done)
        assert finished.all_steps_completed is True
        assert finished.next_step is None

    asyncio.run(_run())
