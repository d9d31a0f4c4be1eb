"""
Crew assignment suggestions for a job.

Each active crew is scored 0-100 from five weighted components:

    preference (25)  builder/community preferred crew, penalty for avoided crews
    territory  (20)  crew home territory matches the job territory
    skills     (25)  required skill tags matched, scaled by proficiency
    capacity   (20)  footage already scheduled on the date plus this job
    proximity  (10)  distance from crew home to the job site

Weights and proficiency bonuses come from config/fieldops.yaml.
"""

from dataclasses import dataclass, field

from geo import coordinates_of
from routing import estimate_travel
from utils import (
    get_assignment_weights,
    get_default_crew_capacity,
    get_proficiency_bonus,
    round_half_up,
)

AVOID_PENALTY = -10
MISSING_SKILL_PENALTY = 5

QUICK_PICK_MIN_SCORE = 50
BEST_MATCH_MIN_SCORE = 60


@dataclass
class SuggestionContext:
    """What the job needs from a crew."""
    scheduled_date: str
    estimated_footage: float | None = None
    product_type: str | None = None
    skill_tag_ids: list[str] = field(default_factory=list)
    territory_id: str | None = None
    job_latitude: float | None = None
    job_longitude: float | None = None
    preferred_crew_id: str | None = None
    avoid_crew_ids: list[str] = field(default_factory=list)
    job_id: str | None = None


@dataclass
class SuggestionReason:
    type: str  # positive | neutral | warning
    label: str
    detail: str | None = None


@dataclass
class AssignmentSuggestion:
    crew: dict
    score: float
    match_percent: int
    reasons: list[SuggestionReason]
    breakdown: dict
    is_preferred: bool
    has_all_skills: bool
    is_over_capacity: bool
    should_avoid: bool


def _crew_skill_ids(crew: dict) -> list[str]:
    return [st.get("skill_tag_id") for st in crew.get("skill_tags") or []]


def _projected_footage(crew: dict, context: SuggestionContext) -> tuple[float, float] | None:
    """(scheduled + job footage, crew max) or None without capacity data."""
    capacity = crew.get("capacity")
    if not capacity:
        return None
    max_footage = crew.get("max_daily_lf") or get_default_crew_capacity()
    new_total = (capacity.get("scheduled_footage") or 0) + (context.estimated_footage or 0)
    return new_total, max_footage


def _preference_score(crew: dict, context: SuggestionContext, weight: float) -> float:
    if context.preferred_crew_id == crew.get("id"):
        return weight
    if crew.get("id") in context.avoid_crew_ids:
        return AVOID_PENALTY
    if not context.preferred_crew_id:
        return weight * 0.5
    return 0


def _territory_score(crew: dict, context: SuggestionContext, weight: float) -> float:
    if not context.territory_id:
        return weight * 0.5
    home = crew.get("home_territory_id")
    if home == context.territory_id:
        return weight
    # Crews without a home territory float between territories
    if not home:
        return weight * 0.3
    return 0


def _average_proficiency(crew: dict, matched: list[str]) -> float:
    if not matched:
        return 1.0
    by_id = {st.get("skill_tag_id"): st for st in crew.get("skill_tags") or []}
    bonuses = [get_proficiency_bonus(by_id.get(skill_id, {}).get("proficiency")) for skill_id in matched]
    return sum(bonuses) / len(bonuses)


def _skill_score(crew: dict, context: SuggestionContext, weight: float) -> float:
    required = context.skill_tag_ids
    if not required and not context.product_type:
        return weight * 0.5

    crew_skills = _crew_skill_ids(crew)
    matched = [skill_id for skill_id in required if skill_id in crew_skills]
    missing = len(required) - len(matched)

    score = 0.0
    if required:
        score = weight * len(matched) / len(required)
        score *= _average_proficiency(crew, matched)
    elif context.product_type in (crew.get("product_skills") or []):
        score = weight

    if missing:
        score -= missing * MISSING_SKILL_PENALTY

    return max(0.0, min(weight, score))


def _capacity_score(crew: dict, context: SuggestionContext, weight: float) -> float:
    projected = _projected_footage(crew, context)
    if projected is None:
        return weight * 0.7

    new_total, max_footage = projected
    utilization = new_total / max_footage
    if utilization <= 0.8:
        return weight
    if utilization <= 1.0:
        return weight * (1 - (utilization - 0.8) / 0.2 * 0.3)
    if utilization <= 1.3:
        return weight * 0.3
    return weight * 0.1


def _proximity_score(crew: dict, weight: float) -> float:
    distance = crew.get("distance_miles")
    if distance is None:
        return weight * 0.5
    if distance <= 10:
        return weight
    if distance <= 20:
        return weight * 0.8
    if distance <= 30:
        return weight * 0.6
    if distance <= 50:
        return weight * 0.4
    return weight * 0.2


def _with_distance(crew: dict, context: SuggestionContext) -> dict:
    """Fill distance_miles/travel_minutes from home coordinates when the caller did not."""
    if crew.get("distance_miles") is not None:
        return crew
    if context.job_latitude is None or context.job_longitude is None:
        return crew
    home = coordinates_of(crew)
    if home is None:
        return crew
    leg = estimate_travel(home, (context.job_latitude, context.job_longitude))
    return {**crew, "distance_miles": leg.distance_miles, "travel_minutes": leg.minutes}


def _build_reasons(crew: dict, context: SuggestionContext) -> list[SuggestionReason]:
    reasons = []
    crew_id = crew.get("id")

    if context.preferred_crew_id == crew_id:
        reasons.append(SuggestionReason("positive", "Preferred", "Builder preferred crew"))
    elif crew_id in context.avoid_crew_ids:
        reasons.append(SuggestionReason("warning", "Avoid", "Marked to avoid for this builder"))

    if context.territory_id and crew.get("home_territory_id") == context.territory_id:
        name = (crew.get("territory") or {}).get("name") or "Match"
        reasons.append(SuggestionReason("positive", "Territory", f"Home territory: {name}"))

    crew_skills = _crew_skill_ids(crew)
    matched = [s for s in context.skill_tag_ids if s in crew_skills]
    missing = [s for s in context.skill_tag_ids if s not in crew_skills]
    if matched:
        has_expert = any(
            st.get("skill_tag_id") in matched and st.get("proficiency") == "expert"
            for st in crew.get("skill_tags") or []
        )
        if has_expert:
            reasons.append(SuggestionReason("positive", "Expert", "Expert proficiency in required skills"))
        elif len(matched) == len(context.skill_tag_ids):
            reasons.append(SuggestionReason("positive", "Skills", "Has all required skills"))
    if missing:
        plural = "s" if len(missing) > 1 else ""
        reasons.append(SuggestionReason("warning", f"Missing {len(missing)} skill{plural}"))

    if context.product_type and context.product_type in (crew.get("product_skills") or []):
        reasons.append(SuggestionReason("positive", context.product_type))

    projected = _projected_footage(crew, context)
    if projected is not None:
        new_total, max_footage = projected
        utilization = int(round_half_up(new_total / max_footage * 100))
        if utilization > 100:
            reasons.append(SuggestionReason("warning", f"{utilization}% capacity", "Would be over capacity"))
        elif utilization > 80:
            reasons.append(SuggestionReason("neutral", f"{utilization}% capacity", "Near full capacity"))
        else:
            reasons.append(SuggestionReason("positive", "Available", f"{utilization}% capacity after job"))

    if crew.get("distance_miles") is not None:
        distance = int(round_half_up(crew["distance_miles"]))
        minutes = crew.get("travel_minutes")
        drive = f"{int(round_half_up(minutes))} min drive" if minutes else None
        if distance <= 15:
            reasons.append(SuggestionReason("positive", f"{distance} mi", drive))
        elif distance <= 30:
            reasons.append(SuggestionReason("neutral", f"{distance} mi", drive))
        else:
            reasons.append(SuggestionReason("warning", f"{distance} mi", drive or "Far from job site"))

    return reasons


def calculate_crew_suggestions(crews: list[dict], context: SuggestionContext) -> list[AssignmentSuggestion]:
    """
    Score every active crew for a job, best first.

    Crews marked to avoid always sort after the rest regardless of score.
    A crew's distance comes from its `distance_miles` key, or is estimated
    from its home coordinates when the job location is known.
    """
    weights = get_assignment_weights()
    suggestions = []

    for crew in crews:
        if not crew.get("is_active"):
            continue
        crew = _with_distance(crew, context)

        breakdown = {
            "preference_score": _preference_score(crew, context, weights["preference"]),
            "territory_score": _territory_score(crew, context, weights["territory"]),
            "skill_score": _skill_score(crew, context, weights["skills"]),
            "capacity_score": _capacity_score(crew, context, weights["capacity"]),
            "proximity_score": _proximity_score(crew, weights["proximity"]),
        }
        score = sum(breakdown.values())
        projected = _projected_footage(crew, context)
        crew_skills = _crew_skill_ids(crew)

        suggestions.append(AssignmentSuggestion(
            crew=crew,
            score=score,
            match_percent=int(round_half_up(score)),
            reasons=_build_reasons(crew, context),
            breakdown=breakdown,
            is_preferred=context.preferred_crew_id == crew.get("id"),
            has_all_skills=all(s in crew_skills for s in context.skill_tag_ids),
            is_over_capacity=projected is not None and projected[0] > projected[1],
            should_avoid=crew.get("id") in context.avoid_crew_ids,
        ))

    # Stable sort: ties keep the caller's crew order
    suggestions.sort(key=lambda s: (s.should_avoid, -s.score))
    return suggestions


def quick_picks(suggestions: list[AssignmentSuggestion], limit: int = 3) -> list[AssignmentSuggestion]:
    """Top suggestions worth showing as one-click picks."""
    return [s for s in suggestions if not s.should_avoid and s.score >= QUICK_PICK_MIN_SCORE][:limit]


def best_match(suggestions: list[AssignmentSuggestion]) -> AssignmentSuggestion | None:
    """The first suggestion, if it is strong enough to auto-select."""
    if not suggestions:
        return None
    best = suggestions[0]
    if best.should_avoid or best.score < BEST_MATCH_MIN_SCORE:
        return None
    return best
