from __future__ import annotations

from agentflow.models import PlanDocument, ProgressDocument, ProgressTask, utcnow_iso


def reconcile_progress(
    previous: ProgressDocument | None,
    plan: PlanDocument,
    *,
    plan_file: str,
    now: str | None = None,
) -> ProgressDocument:
    """Derive the progress document for ``plan`` from the one already on disk.

    Tasks present in both keep their whole execution record and adopt the new
    structural fields. Tasks only in the new plan start pending; tasks the
    new plan dropped disappear. Task order follows the plan.
    """
    timestamp = now or utcnow_iso()
    if previous is None:
        return ProgressDocument(
            plan_file=plan_file,
            tasks=[ProgressTask.from_task(task) for task in plan.tasks],
            created_at=timestamp,
            last_updated=timestamp,
            revision_tag=plan.revision_tag,
        )

    existing = {task.id: task for task in previous.tasks}
    merged: list[ProgressTask] = []
    for task in plan.tasks:
        prior = existing.get(task.id)
        if prior is None:
            merged.append(ProgressTask.from_task(task))
            continue
        merged.append(
            ProgressTask(
                id=task.id,
                designated_agent=task.designated_agent,
                description=task.description,
                files_to_modify=list(task.files_to_modify),
                dependencies=list(task.dependencies),
                state=prior.state,
                agent_session_id=prior.agent_session_id,
                files_modified=list(prior.files_modified),
                summary=prior.summary,
                started_at=prior.started_at,
                completed_at=prior.completed_at,
                failed_at=prior.failed_at,
                self_heal_attempts=prior.self_heal_attempts,
                self_heal_history=list(prior.self_heal_history),
            )
        )

    return ProgressDocument(
        plan_file=plan_file,
        tasks=merged,
        created_at=previous.created_at,
        last_updated=timestamp,
        revision_tag=plan.revision_tag,
    )
