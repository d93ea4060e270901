"""
AI coach: prompts for the text-generation collaborator plus deterministic fallbacks.

每个函数都先尝试模型生成，失败（None）时返回本地确定性文案，
调用方永远拿到一段可展示的文本。
"""
from datetime import datetime
from typing import List, Optional

from core.config_manager import config
from core.llm_adapter import BaseLLMAdapter, TextRequest, generate_text_async
from core.models import (
    AiTone,
    AppData,
    ClassificationStatus,
    FinishSession,
    Goal,
    SessionClassification,
    SessionStatus,
    Task,
)
from core.utils import compact_text, load_prompt

TONE_LABELS = {
    AiTone.MILITARY: "military (short, no padding)",
    AiTone.RAW_FACTS: "raw_facts (dry facts, minimal emotion)",
    AiTone.PSYCHOEDUCATION: "psychoeducation (explain the dopamine / pseudo-finish mechanism)",
}

# 模型给出的提示过短或过长时视为无效
TIP_MIN_LEN = 5
TIP_MAX_LEN = 100


def tone_label(goal: Optional[Goal]) -> str:
    tone = goal.ai_tone if goal is not None else AiTone.PSYCHOEDUCATION
    return TONE_LABELS.get(tone, TONE_LABELS[AiTone.PSYCHOEDUCATION])


# ============================================================
# Motivation tip
# ============================================================

def fallback_motivation_tip(task: Task, is_stuck: bool, days_idle: int) -> str:
    if is_stuck:
        return "Split the remaining 10% into 3 micro-steps. Do the first one right now."
    if days_idle > 7:
        return "Set a concrete deadline today. Write it down."
    if task.progress >= 50:
        return "Great work! Take one small step to keep the momentum."
    return "Start with 5 minutes. Breaking the inertia is what matters."


async def motivation_tip(
    task: Task,
    is_stuck: bool,
    days_idle: int,
    adapter: Optional[BaseLLMAdapter] = None,
) -> str:
    prompt = load_prompt("coach/motivation_tip", {
        "task_name": compact_text(task.name, 120) or "unknown task",
        "progress": task.progress,
        "days": days_idle,
    })
    tip = await generate_text_async(
        TextRequest(prompt=prompt, temperature=0.7, top_p=0.9, num_predict=60, max_len=120),
        timeout=config.AI_TIP_TIMEOUT_SECONDS,
        adapter=adapter,
    )
    if tip and TIP_MIN_LEN < len(tip) <= TIP_MAX_LEN:
        return tip
    return fallback_motivation_tip(task, is_stuck, days_idle)


# ============================================================
# Finish-session summary
# ============================================================

def fallback_finish_summary(
    goal: Optional[Goal],
    task: Task,
    classification: SessionClassification,
    user_note: Optional[str] = None,
) -> str:
    goal_name = goal.name if goal is not None else "unknown goal"
    goal_type = goal.type.value if goal is not None else "not set"
    done_def = compact_text(task.definition_of_done, 120)
    note = compact_text(user_note or classification.note, 180)
    note_suffix = f" Note: {note}" if note else ""

    status = classification.status
    ninety_moment = status != ClassificationStatus.DONE and 70 <= task.progress < 100

    if status == ClassificationStatus.DONE:
        return (
            f'Closed. Goal: "{goal_name}" ({goal_type}). This is a real finish, not a 90% '
            f'pseudo-finish. Write down one small win and close the loop: what exactly got it to DONE?'
        )

    if status == ClassificationStatus.STUCK:
        context = (
            "This looks like the classic 70-90% moment (pseudo-finish plus a dopamine drop)."
            if ninety_moment else "This is a blockage signal, not laziness."
        )
        done_hint = f" ({done_def})" if done_def else ""
        return (
            f'Stuck at the finish in goal "{goal_name}" ({goal_type}). {context} '
            f"Next step: pin down one missing DONE condition{done_hint} and plan 25 minutes "
            f"for that element only.{note_suffix}"
        )

    context = (
        "Watch out for the pseudo-finish at 70-90%: your brain already wants the reward."
        if ninety_moment else "Keep the momentum."
    )
    return (
        f'In progress in goal "{goal_name}" ({goal_type}). {context} '
        f"Next step: write down one concrete micro-step for today and come back to Finish Mode "
        f"once it is closed.{note_suffix}"
    )


def _duration_minutes(start: Optional[datetime], end: Optional[datetime]) -> str:
    if start is None or end is None:
        return "unknown"
    return str(max(0, round((end - start).total_seconds() / 60)))


async def finish_summary(
    goal: Optional[Goal],
    task: Task,
    classification: SessionClassification,
    user_note: Optional[str] = None,
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
    adapter: Optional[BaseLLMAdapter] = None,
) -> str:
    prompt = load_prompt("coach/finish_summary", {
        "goal_name": compact_text(goal.name, 80) if goal else "unknown goal",
        "goal_type": goal.type.value if goal else "not set",
        "goal_strategy": compact_text(goal.strategy, 240) if goal and goal.strategy else "none",
        "tone": tone_label(goal),
        "task_name": compact_text(task.name, 100) or "unknown task",
        "progress": task.progress,
        "definition_of_done": compact_text(task.definition_of_done, 240) or "NONE",
        "stuck_flag": "true" if task.stuck_at_ninety else "false",
        "classification": classification.status.value,
        "classification_note": compact_text(classification.note, 220) or "none",
        "user_note": compact_text(user_note, 220) or "none",
        "duration": _duration_minutes(start_time, end_time),
    })
    summary = await generate_text_async(
        TextRequest(prompt=prompt, temperature=0.6, top_p=0.9, num_predict=180, max_len=420),
        timeout=config.AI_SUMMARY_TIMEOUT_SECONDS,
        adapter=adapter,
    )
    return summary or fallback_finish_summary(goal, task, classification, user_note)


# ============================================================
# Stuck nudge (daily audit)
# ============================================================

def fallback_stuck_nudge(goal: Goal, task: Task, days: int) -> str:
    if goal.ai_tone == AiTone.MILITARY:
        return f'"{task.name}" at {task.progress}% for {days} days. Close it today. First micro-step now.'
    if goal.ai_tone == AiTone.RAW_FACTS:
        return f'"{task.name}": {task.progress}%, unchanged for {days} days, goal "{goal.name}".'
    return (
        f'"{task.name}" has been at {task.progress}% for {days} days. The last 10% feels '
        f"endless because the reward already seems close. Name the smallest missing step and do it."
    )


async def stuck_nudge(
    goal: Goal,
    task: Task,
    days: int,
    adapter: Optional[BaseLLMAdapter] = None,
) -> str:
    prompt = load_prompt("coach/stuck_nudge", {
        "task_name": compact_text(task.name, 120),
        "goal_name": compact_text(goal.name, 80),
        "progress": task.progress,
        "days": days,
        "tone": tone_label(goal),
    })
    nudge = await generate_text_async(
        TextRequest(prompt=prompt, temperature=0.7, top_p=0.9, num_predict=90, max_len=240),
        timeout=config.AI_TIP_TIMEOUT_SECONDS,
        adapter=adapter,
    )
    return nudge or fallback_stuck_nudge(goal, task, days)


# ============================================================
# Coach reply (free-form chat)
# ============================================================

def _goals_snapshot(goals: List[Goal]) -> str:
    active = [g for g in goals if g.is_active]
    if not active:
        return "No active goals."
    ordered = sorted(active, key=lambda g: (g.type.value != "main", -g.completion))
    lines = [
        f"{i}) {compact_text(g.name, 80)} (type: {g.type.value}, completion: {g.completion}%, "
        f"tone: {tone_label(g)}) | strategy: {compact_text(g.strategy, 160) or 'none'}"
        for i, g in enumerate(ordered[:5], start=1)
    ]
    return f"Active goals: {len(active)}/{config.MAX_ACTIVE_GOALS}.\n" + "\n".join(lines)


def _recent_sessions(history: List[FinishSession], limit: int = 12) -> str:
    completed = [s for s in history if s.status == SessionStatus.COMPLETED][-limit:]
    if not completed:
        return "none"
    lines = []
    for s in completed:
        cls = s.classification.status.value if s.classification else "n/a"
        lines.append(f"- pillarId={s.pillar_id} taskId={s.task_id} | classification={cls}")
    return "\n".join(lines)


def fallback_coach_reply(data: AppData, stuck_names: List[str]) -> str:
    active = data.active_goals()
    if not active:
        return "No active goals. Pick one thing you want finished this month and add it as your main goal."
    if stuck_names:
        return (
            f'Start with "{stuck_names[0]}": it is stuck near the finish. '
            f"Split what is left into three micro-steps and open a Finish session for the first one."
        )
    main = next((g for g in active if g.type.value == "main"), active[0])
    return (
        f'Focus on "{main.name}" ({main.completion}%). Pick its smallest open task and give it '
        f"one 25-minute Finish session today."
    )


async def coach_reply(
    data: AppData,
    message: str,
    stuck_names: List[str],
    adapter: Optional[BaseLLMAdapter] = None,
) -> str:
    prompt = load_prompt("coach/coach_reply", {
        "goals_snapshot": _goals_snapshot(data.goals),
        "stuck_tasks": ", ".join(stuck_names) or "none",
        "recent_sessions": _recent_sessions(data.session_history),
        "message": compact_text(message, 800),
    })
    reply = await generate_text_async(
        TextRequest(prompt=prompt, temperature=0.7, top_p=0.9, num_predict=220, max_len=600),
        timeout=config.AI_SUMMARY_TIMEOUT_SECONDS,
        adapter=adapter,
    )
    return reply or fallback_coach_reply(data, stuck_names)
