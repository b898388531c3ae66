from sqlalchemy import Enum as SQLEnum


def enum_type(enum_cls, name: str) -> SQLEnum:
    """Enum column that stores the member *values* (lowercase strings), matching the migrations."""
    return SQLEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )
