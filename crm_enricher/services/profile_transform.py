"""
Profile to CRM field mapping.

Accepts either the entity-list payload (`included` entries tagged with a
`$type`) or a flat profile dict. Malformed payloads raise
`CollaboratorError` so they only fail the item they belong to.
"""

from typing import Any

from crm_enricher.features.enrichment.services import CollaboratorError

POSITION_TYPE = "com.linkedin.voyager.identity.profile.Position"
PROFILE_TYPE = "com.linkedin.voyager.identity.profile.Profile"


def _mapping(value: Any, what: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise CollaboratorError(f"Malformed profile: {what} is not an object")
    return value


def _number(value: Any, what: str) -> int:
    if isinstance(value, bool):
        raise CollaboratorError(f"Malformed profile: {what} is not a number")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise CollaboratorError(f"Malformed profile: {what} is not a number") from None


def _start_key(position: dict) -> tuple[int, int]:
    time_period = _mapping(position.get("timePeriod"), "timePeriod")
    start = _mapping(time_period.get("startDate"), "startDate")
    return (
        _number(start.get("year") or 0, "startDate.year"),
        _number(start.get("month") or 0, "startDate.month"),
    )


def _birthdate(birth: Any) -> str | None:
    birth = _mapping(birth, "birthDate")
    if not birth.get("month") or not birth.get("day"):
        return None
    year = _number(birth.get("year") or 1900, "birthDate.year")
    month = _number(birth["month"], "birthDate.month")
    day = _number(birth["day"], "birthDate.day")
    if not (1 <= month <= 12 and 1 <= day <= 31):
        raise CollaboratorError(f"Malformed profile: birthDate {month}/{day} is out of range")
    return f"{year:04d}-{month:02d}-{day:02d}"


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def profile_to_crm_fields(profile: dict[str, Any]) -> dict[str, Any]:
    """
    Map a profile to contact fields.

    Returns:
        dict with jobtitle, description, address1_name and birthdate

    Raises:
        CollaboratorError: the payload does not have the expected shape
    """
    if not isinstance(profile, dict):
        raise CollaboratorError("Profile payload is not an object")

    included = profile.get("included")
    if isinstance(included, list):
        entries = [_mapping(item, "included entry") for item in included]
        positions = [item for item in entries if item.get("$type") == POSITION_TYPE]
        current = [
            p for p in positions if not _mapping(p.get("timePeriod"), "timePeriod").get("endDate")
        ]
        current.sort(key=_start_key, reverse=True)
        person = next((item for item in entries if item.get("$type") == PROFILE_TYPE), {})
        title = current[0].get("title") if current else None
    else:
        person = profile
        title = _mapping(profile.get("currentPosition"), "currentPosition").get("title")

    return {
        "jobtitle": _text(title) or _text(person.get("headline")),
        "description": _text(person.get("summary")),
        "address1_name": _text(person.get("address")) or _text(person.get("location")),
        "birthdate": _birthdate(person.get("birthDate")),
    }


class ProfileTransform:
    """Transformer collaborator wrapping `profile_to_crm_fields`."""

    async def transform(self, profile: dict[str, Any]) -> dict[str, Any]:
        return profile_to_crm_fields(profile)
