from enum import IntEnum


class Op(IntEnum):
    """Pending operation stored with each tracking record."""

    UNCHANGED = 0
    UPDATE = 1
    # Remote object does not exist yet.
    INSERT = 2
    DELETE = 4


WRITE_OPS = (Op.INSERT, Op.UPDATE)
