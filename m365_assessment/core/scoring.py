"""Overall assessment score derivation.

Precedence, highest first:

1. ``secure-score``: the tenant's secure score percentage
2. ``identity-access``: percentage of MFA-capable users
3. ``license``: step function of license utilization

Only categories that succeeded are considered. When none did, the
configured conservative default is used.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field

from m365_assessment.core.config import Settings

LICENSE = "license"
SECURE_SCORE = "secure-score"
IDENTITY_ACCESS = "identity-access"

SUPPORTED_CATEGORIES = (LICENSE, SECURE_SCORE, IDENTITY_ACCESS)


@dataclass(frozen=True)
class ScoringPolicy:
    # (utilization strictly above, score), highest threshold first
    license_thresholds: tuple[tuple[float, int], ...] = ((80.0, 85), (60.0, 75), (40.0, 65))
    license_floor: int = 50
    degraded_score: int = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScoringPolicy":
        return cls(
            license_thresholds=tuple(
                (float(above), int(score)) for above, score in settings.license_score_thresholds
            ),
            license_floor=settings.license_score_floor,
            degraded_score=settings.degraded_assessment_score,
        )


@dataclass(frozen=True)
class ScoreDerivation:
    score: int
    source: str | None
    details: dict = field(default_factory=dict)


def license_utilization_score(utilization: float, policy: ScoringPolicy) -> int:
    """Map a utilization percentage onto the license score steps."""
    for above, score in sorted(policy.license_thresholds, key=lambda p: p[0], reverse=True):
        if utilization > above:
            return score
    return policy.license_floor


def _percentage(payload: Mapping, key: str) -> float | None:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def derive_overall_score(
    successes: Mapping[str, Mapping],
    policy: ScoringPolicy,
) -> ScoreDerivation:
    """Pick the overall score from the successful category payloads.

    Args:
        successes: Payloads of categories that succeeded, keyed by category
        policy: Thresholds and defaults

    Returns:
        ScoreDerivation naming the category the score came from, or
        ``None`` when the degraded default was used
    """
    secure = successes.get(SECURE_SCORE)
    if secure is not None:
        percentage = _percentage(secure, "percentage")
        if percentage is not None:
            return ScoreDerivation(round(percentage), SECURE_SCORE, {"percentage": percentage})

    identity = successes.get(IDENTITY_ACCESS)
    if identity is not None:
        percentage = _percentage(identity, "mfaCapablePercentage")
        if percentage is not None:
            return ScoreDerivation(
                round(percentage), IDENTITY_ACCESS, {"mfaCapablePercentage": percentage}
            )

    license_payload = successes.get(LICENSE)
    if license_payload is not None:
        utilization = _percentage(license_payload, "utilizationPercentage")
        if utilization is not None:
            return ScoreDerivation(
                license_utilization_score(utilization, policy),
                LICENSE,
                {"utilizationPercentage": utilization},
            )

    return ScoreDerivation(policy.degraded_score, None)


def build_recommendations(
    successes: Mapping[str, Mapping],
    unavailable: Mapping[str, str],
) -> list[str]:
    """Plain-language follow-ups derived from the collected categories."""
    recommendations: list[str] = []

    if not successes:
        recommendations.append("Complete admin consent to enable full security assessment")
        recommendations.append("Verify the app registration has the required Microsoft Graph permissions")
        return recommendations

    license_payload = successes.get(LICENSE)
    if license_payload is not None:
        utilization = _percentage(license_payload, "utilizationPercentage")
        if utilization is not None and utilization < 40:
            recommendations.append(
                f"License utilization is {utilization:.0f}%; review unassigned licenses to reduce cost"
            )
        elif utilization is not None and utilization > 90:
            recommendations.append(
                f"License utilization is {utilization:.0f}%; plan capacity before onboarding new users"
            )

    secure = successes.get(SECURE_SCORE)
    if secure is not None:
        percentage = _percentage(secure, "percentage")
        if percentage is not None and percentage < 60:
            recommendations.append(
                "Secure score is below 60%; prioritize the highest-impact improvement actions"
            )

    identity = successes.get(IDENTITY_ACCESS)
    if identity is not None:
        mfa = _percentage(identity, "mfaCapablePercentage")
        if mfa is not None and mfa < 90:
            recommendations.append(
                f"Only {mfa:.0f}% of users are MFA capable; enforce MFA registration"
            )

    for category in sorted(unavailable):
        recommendations.append(
            f"Data for {category} could not be collected; check the related Graph permissions"
        )

    return recommendations
