"""Prompt builders for the two Tier 2 stages.

Stage 1 (assessment) describes the user's state and asks for a structured
situational assessment without recommendations. Stage 2 (selection) shows
that assessment plus the indexed Tier 0 candidates and asks the model to
pick and rank among them; it cannot invent new ones.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date

from .assessment import DirectRecommendationCandidate
from .models import (
    ExperimentStatus,
    GoalStatus,
    HabitStatus,
    MetricSourceType,
    ProfileSnapshot,
    ProjectStatus,
    RecommendationContext,
    StateSnapshot,
    TaskStatus,
)
from .retrieval import RagContext, format_rag_context
from .schemas import SituationalAssessment

ASSESSMENT_PROMPT_VERSION = "assessment-v1.2"
SELECTION_PROMPT_VERSION = "selection-v1.0"
PROMPT_VERSION = f"{ASSESSMENT_PROMPT_VERSION}|{SELECTION_PROMPT_VERSION}"

MAX_PROMPT_TASKS = 15
MAX_PROMPT_CHECK_INS = 7

_ASSESSMENT_SYSTEM = """\
You are a personal development analyst embedded in a system called Mastery.
Your job is to deeply analyze a user's current state and produce a structured situational assessment.

You must evaluate:
1. Overall capacity: are they overloaded, stretched, balanced, or underloaded?
2. Energy trend: is energy declining, stable, or improving based on recent check-ins?
3. Overall momentum: are they stalled, slowing, steady, or accelerating toward their goals?
4. Key strengths: what's working well (habits with high adherence, consistent check-ins, etc.)
5. Key risks: what needs attention (dropping adherence, stuck projects, drifting metrics)
6. Patterns: recurring themes (e.g., energy drops on certain days, tasks that keep rescheduling)
7. Goal progress: for each active goal, assess momentum and identify the bottleneck
8. User identity context: do goals and habits align with stated values and roles?
9. Capacity constraints: is actual utilization within stated limits? Is intensity matching season type?

Be specific and evidence-based. Reference actual numbers (adherence %, streak counts, task counts).
Consider user's values, roles, and season context when assessing alignment and priorities.
Do NOT make recommendations; that comes later. Focus purely on understanding the situation.
"""

_ASSESSMENT_CONTEXT = {
    RecommendationContext.MORNING_CHECK_IN: (
        "CONTEXT: Morning check-in. Focus on today's capacity, current energy level, "
        "what's scheduled, and whether the day looks feasible."
    ),
    RecommendationContext.EVENING_CHECK_IN: (
        "CONTEXT: Evening check-in. Focus on what was accomplished vs planned, patterns in "
        "missed items, and energy trajectory."
    ),
    RecommendationContext.WEEKLY_REVIEW: (
        "CONTEXT: Weekly review. Take a 7-day view. Analyze trends in goal progress, habit "
        "adherence, capacity utilization, and experiment outcomes."
    ),
    RecommendationContext.DRIFT_ALERT: (
        "CONTEXT: Drift alert triggered. A lead metric or key indicator has deviated "
        "significantly. Focus on identifying the root cause."
    ),
    RecommendationContext.MIDDAY: (
        "CONTEXT: Midday check. Brief assessment of remaining capacity and energy for the "
        "rest of the day."
    ),
    RecommendationContext.ONBOARDING: (
        "CONTEXT: New user onboarding. Assess what they've set up so far and what "
        "foundational elements are missing."
    ),
    RecommendationContext.PROACTIVE_CHECK: (
        "CONTEXT: Proactive background check. Perform a holistic health assessment across "
        "all dimensions: goal momentum, habit adherence trends, task pipeline health, project "
        "progress, and capacity. Identify the highest-leverage area for improvement. This is "
        "not triggered by the user, so focus on what they might be missing."
    ),
}

_SELECTION_SYSTEM = """\
You are a personal development coach in the Mastery system.
You receive a situational assessment and a list of PRE-COMPUTED recommendation candidates.
Your job is to SELECT from these candidates; you CANNOT create new recommendations.

For each selected candidate, provide a personalized rationale that:
1. Explains WHY this recommendation matters for THIS user RIGHT NOW
2. References specific details from the assessment (energy level, patterns, risks)
3. Uses language matching the user's coaching style preference

IMPORTANT CONSTRAINTS:
- You can ONLY select from the provided candidates (by index)
- You CANNOT modify the recommendation type, target entity, or action kind
- You CAN refine the action summary to be more personalized
- You CAN provide a custom rationale (replacing the generic one)
- Select 3-5 candidates maximum (respect the context-specific limits below)
- Rank selections by priority (1 = most important)

SELECTION PRINCIPLES:
- Less is more: 3-5 focused recommendations beat 7 scattered ones
- Capacity-aware: if user is overloaded, prioritize scaling down over adding
- Root cause: prefer recommendations that address underlying patterns
- Energy-sensitive: low energy users need gentler interventions
- Avoid conflicts: don't select multiple recommendations targeting the same entity
- Respect boundaries: never select candidates that conflict with stated content boundaries

REJECTION REASONING:
- Briefly explain why you didn't select certain high-scoring candidates
- This helps with explainability and debugging
"""

_SELECTION_CONTEXT = {
    RecommendationContext.MORNING_CHECK_IN: """\
CONTEXT: Morning check-in.
- Select 3-5 candidates maximum
- Prioritize: Top1 or NextBestAction should be rank 1 if available
- Consider habit mode adjustments if energy is low
- Frame rationales around "today's focus"
""",
    RecommendationContext.EVENING_CHECK_IN: """\
CONTEXT: Evening check-in.
- Select 3-4 candidates maximum
- Focus on rescheduling (not guilt) and reflection
- Frame rationales around "setting up tomorrow for success"
""",
    RecommendationContext.WEEKLY_REVIEW: """\
CONTEXT: Weekly review.
- Select up to 5-7 candidates
- Include at least one experiment if patterns warrant it
- Frame rationales around "this week's learnings" and "next week's focus"
""",
    RecommendationContext.DRIFT_ALERT: """\
CONTEXT: Drift alert.
- Select 2-3 candidates maximum
- Prioritize the drifting signal and its root cause
- Be direct and focused in rationales
""",
    RecommendationContext.MIDDAY: """\
CONTEXT: Midday check.
- Select 1-2 candidates maximum
- Focus on next best action for remaining day
""",
    RecommendationContext.ONBOARDING: """\
CONTEXT: Onboarding.
- Select 2-3 candidates maximum
- Prioritize foundational elements
- Use encouraging, approachable language
""",
    RecommendationContext.PROACTIVE_CHECK: """\
CONTEXT: Proactive background check.
- Select 3-5 candidates maximum
- Prioritize highest-leverage interventions
- Avoid duplicating pending recommendations
""",
}


def _iso(value: date | None, default: str = "none") -> str:
    return value.isoformat() if value else default


def _short(value: date | None) -> str:
    return value.strftime("%b %d") if value else ""


def _num(value: float | None) -> str:
    if value is None:
        return "?"
    return f"{value:g}"


def _minutes(value: int | None) -> str:
    return f"{value}min" if value is not None else "not set"


# --- Stage 1 ---


def build_assessment_system_prompt(context: RecommendationContext) -> str:
    instructions = _ASSESSMENT_CONTEXT.get(context, "CONTEXT: General assessment.")
    return f"{_ASSESSMENT_SYSTEM}\n{instructions}\n"


def build_assessment_user_prompt(
    state: StateSnapshot,
    context: RecommendationContext,
    rag: RagContext | None = None,
) -> str:
    lines = [
        f"# User State Snapshot (as of {state.today.isoformat()})",
        f"Check-in streak: {state.check_in_streak} days",
        "",
    ]
    lines += _profile_section(state.profile)
    lines += _goals_section(state)
    lines += _habits_section(state)
    lines += _tasks_section(state)
    lines += _projects_section(state)
    lines += _experiments_section(state)
    lines += _check_ins_section(state)
    lines += _metrics_section(state)

    history = format_rag_context(rag)
    if history:
        lines.append(history)
    return "\n".join(lines)


def _profile_section(profile: ProfileSnapshot) -> list[str]:
    lines = ["## User Profile", f"Timezone: {profile.timezone} | Locale: {profile.locale}", ""]

    if profile.values:
        lines.append("### Core Values (ranked)")
        for v in sorted(profile.values, key=lambda v: v.rank)[:10]:
            key = f" [{v.key}]" if v.key else ""
            lines.append(f"  {v.rank}. {v.label}{key}")
        lines.append("")

    roles = sorted(
        (r for r in profile.roles if r.is_active),
        key=lambda r: (-r.season_priority, r.rank),
    )
    if roles:
        lines.append("### Active Roles (by season priority)")
        for r in roles:
            lines.append(
                f"  - {r.label} | SeasonPriority:{r.season_priority}/5 | "
                f"Min:{r.min_weekly_minutes}min/wk | Target:{r.target_weekly_minutes}min/wk | "
                f"Tags:[{', '.join(r.tags)}]"
            )
        lines.append("")

    season = profile.current_season
    if season is not None:
        lines.append("### Current Season")
        lines.append(f'  "{season.label}" | Type:{season.type} | Intensity:{season.intensity}/10')
        lines.append(
            f"  Period: {_iso(season.start_date, '?')} to {_iso(season.expected_end_date, 'ongoing')}"
        )
        if season.success_statement:
            lines.append(f'  Success definition: "{season.success_statement}"')
        if season.non_negotiables:
            lines.append(f"  Non-negotiables: {', '.join(season.non_negotiables)}")
        if season.focus_goal_ids:
            lines.append(f"  Focus goals: {len(season.focus_goal_ids)} designated")
        lines.append("")

    prefs = profile.preferences
    lines += [
        "### Preferences",
        f"  Coaching style: {prefs.coaching_style} | Verbosity: {prefs.verbosity} | "
        f"Nudge level: {prefs.nudge_level}",
        "",
    ]

    constraints = profile.constraints
    lines.append("### Capacity Constraints")
    lines.append(
        f"  Weekday max: {_minutes(constraints.max_planned_minutes_weekday)} | "
        f"Weekend max: {_minutes(constraints.max_planned_minutes_weekend)}"
    )
    if constraints.health_notes:
        lines.append(f"  Health context: {constraints.health_notes}")
    if constraints.content_boundaries:
        lines.append(f"  Content boundaries: {', '.join(constraints.content_boundaries)}")
    lines.append("")
    return lines


def _goals_section(state: StateSnapshot) -> list[str]:
    active = [g for g in state.goals if g.status == GoalStatus.ACTIVE]
    if not active:
        return ["## Goals: None active", ""]
    lines = [f"## Goals ({len(active)} active)"]
    for g in active:
        lines.append(f'- [{g.id}] "{g.title}" | Priority:{g.priority} | Deadline:{_iso(g.deadline)}')
        for m in g.metrics:
            lines.append(
                f'  - {m.kind} metric: "{m.name}" | Target:{_num(m.target_value)} | '
                f"Current:{_num(m.current_value)} | Source:{m.source_hint}"
            )
    lines.append("")
    return lines


def _habits_section(state: StateSnapshot) -> list[str]:
    active = [h for h in state.habits if h.status == HabitStatus.ACTIVE]
    if not active:
        return ["## Habits: None active", ""]
    lines = [f"## Habits ({len(active)} active)"]
    for h in active:
        bound = "yes" if h.metric_binding_ids else "no"
        lines.append(
            f'- [{h.id}] "{h.title}" | Mode:{h.current_mode.value} | '
            f"Adherence7d:{h.adherence_7day:.0%} | Streak:{h.current_streak} | MetricBound:{bound}"
        )
    lines.append("")
    return lines


def _tasks_section(state: StateSnapshot) -> list[str]:
    closed = {TaskStatus.COMPLETED, TaskStatus.CANCELLED, TaskStatus.ARCHIVED}
    actionable = sorted(
        (t for t in state.tasks if t.status not in closed), key=lambda t: t.priority
    )[:MAX_PROMPT_TASKS]
    today = [t for t in actionable if t.scheduled_date == state.today]
    minutes = sum(t.est_minutes or 0 for t in today)

    lines = [
        f"## Tasks ({len(actionable)} actionable, {len(today)} scheduled today, "
        f"{minutes} min total today)"
    ]
    for t in actionable:
        scheduled = "Scheduled(today)" if t.scheduled_date == state.today else _short(t.scheduled_date)
        extras = [
            scheduled,
            f"Due:{_short(t.due_date)}" if t.due_date else "",
            "Goal-linked" if t.goal_id else "",
            f"Rescheduled:{t.reschedule_count}x" if t.reschedule_count > 0 else "",
        ]
        tail = " ".join(e for e in extras if e)
        line = (
            f'- [{t.id}] "{t.title}" | {t.status.value} | P{t.priority} | '
            f"Energy:{t.energy_cost} | Est:{t.est_minutes or 0}min | {tail}"
        )
        lines.append(line.rstrip(" |"))
    if len(state.tasks) > MAX_PROMPT_TASKS:
        lines.append(f"  ... and {len(state.tasks) - MAX_PROMPT_TASKS} more tasks")
    lines.append("")
    return lines


def _projects_section(state: StateSnapshot) -> list[str]:
    active = [p for p in state.projects if p.status == ProjectStatus.ACTIVE]
    if not active:
        return ["## Projects: None active", ""]
    lines = [f"## Projects ({len(active)} active)"]
    for p in active:
        next_action = "HasNextAction" if p.next_task_id else "NO_NEXT_ACTION"
        lines.append(
            f'- [{p.id}] "{p.title}" | Progress:{p.completed_tasks}/{p.total_tasks} | '
            f"{next_action} | End:{_iso(p.target_end_date)}"
        )
    lines.append("")
    return lines


def _experiments_section(state: StateSnapshot) -> list[str]:
    if not state.experiments:
        return ["## Experiments: None", ""]
    active = [e for e in state.experiments if e.status == ExperimentStatus.ACTIVE]
    completed = [e for e in state.experiments if e.status == ExperimentStatus.COMPLETED]
    lines = [f"## Experiments ({len(active)} active, {len(completed)} completed)"]
    for e in active:
        lines.append(f'- [Active] [{e.id}] "{e.title}" | Started:{_iso(e.start_date, "?")}')
    for e in completed[:3]:
        lines.append(f'- [Completed] "{e.title}"')
    lines.append("")
    return lines


def _check_ins_section(state: StateSnapshot) -> list[str]:
    if not state.recent_check_ins:
        return ["## Recent Check-ins: None", ""]
    lines = [f"## Recent Check-ins ({len(state.recent_check_ins)} in window)"]
    recent = sorted(state.recent_check_ins, key=lambda c: c.date, reverse=True)
    for c in recent[:MAX_PROMPT_CHECK_INS]:
        energy = f" | Energy:{c.energy_level}/5" if c.energy_level is not None else ""
        lines.append(f"- {c.date.isoformat()} | {c.type.value} | {c.status.value}{energy}")
    lines.append("")
    return lines


def _metrics_section(state: StateSnapshot) -> list[str]:
    manual = [m for m in state.metric_definitions if m.source_type == MetricSourceType.MANUAL]
    if not manual:
        return []
    lines = [f"## Manual Metrics ({len(manual)})"]
    for m in manual:
        lines.append(
            f'- [{m.id}] "{m.name}" | LastObserved:{_iso(m.last_observation_date, "never")}'
        )
    lines.append("")
    return lines


# --- Stage 2 ---


def build_selection_system_prompt(context: RecommendationContext) -> str:
    instructions = _SELECTION_CONTEXT.get(
        context, "Select 3-5 candidates based on the user's current state.\n"
    )
    return f"{_SELECTION_SYSTEM}\n{instructions}"


def build_selection_user_prompt(
    assessment: SituationalAssessment,
    candidates: Sequence[DirectRecommendationCandidate],
    context: RecommendationContext,
    profile: ProfileSnapshot,
    rag: RagContext | None = None,
) -> str:
    prefs = profile.preferences
    lines = [
        "# User Preferences",
        f"Coaching style: {prefs.coaching_style}",
        f"Verbosity: {prefs.verbosity}",
    ]
    season = profile.current_season
    if season is not None:
        lines.append(f"Season: {season.type} (intensity {season.intensity}/10)")
        if season.non_negotiables:
            lines.append(f"Non-negotiables: {', '.join(season.non_negotiables)}")
    if profile.constraints.content_boundaries:
        lines.append(
            "Content boundaries (MUST respect): "
            + ", ".join(profile.constraints.content_boundaries)
        )
    lines.append("")

    history = format_rag_context(rag, heading="What Worked Before")
    if history:
        lines.append(history)

    lines += [
        "# Situational Assessment",
        assessment.model_dump_json(by_alias=True, indent=2),
        "",
        "# Candidates (select by index)",
        "Each candidate has been scored by deterministic rules. Higher score = higher baseline priority.",
        "",
    ]
    for i, c in enumerate(candidates):
        target = c.target_kind.value
        if c.target_entity_id:
            target += f" ({c.target_entity_id})"
        lines.append(f"## Candidate {i}")
        lines.append(f"Type: {c.type.value}")
        lines.append(f"Target: {target}")
        if c.target_entity_title:
            lines.append(f'Target Title: "{c.target_entity_title}"')
        lines.append(f"Action: {c.action_kind.value}")
        lines.append(f'Title: "{c.title}"')
        lines.append(f"Score: {c.score:.2f}")
        lines.append(f'Default Rationale: "{c.rationale}"')
        if c.action_summary:
            lines.append(f'Action Summary: "{c.action_summary}"')
        lines.append("")

    lines.append(f"# Context: {context.value}")
    lines.append("Select the most appropriate candidates and provide personalized rationale for each.")
    return "\n".join(lines) + "\n"
