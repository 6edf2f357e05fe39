from __future__ import annotations

from typing import Iterable, Mapping

from ..directory.models import UserEntry

ProfileValue = str | list[str]


class AttributeMapper:
    """Projects directory attributes onto the host's profile fields.

    Absent attributes leave the field out of the result; fields listed in
    ``multi_valued`` keep every value, the others take the first one.
    """

    def __init__(self, field_map: Mapping[str, str] | None = None, multi_valued: Iterable[str] = ()) -> None:
        self.field_map = dict(field_map or {})
        self.multi_valued = set(multi_valued)

    def attributes(self) -> list[str]:
        """Directory attributes to request when fetching a user entry."""
        return list(self.field_map)

    def map(self, user: UserEntry, field_map: Mapping[str, str] | None = None) -> dict[str, ProfileValue]:
        fields = self.field_map if field_map is None else field_map
        profile: dict[str, ProfileValue] = {}
        for attr, field_name in fields.items():
            values = [v for v in user.values(attr) if v != ""]
            if not values:
                continue
            if field_name in self.multi_valued:
                profile[field_name] = values
            else:
                profile[field_name] = values[0]
        return profile
