from procurement.domain import StatusHistoryEntry


def build_entry(status, actor, now, comments=""):
    return StatusHistoryEntry(
        status=str(status),
        updated_at=now,
        updated_by_uid=actor.uid,
        updated_by_name=actor.name,
        comments=comments or "",
    )


def append(history, entry):
    """Return a new history tuple; insertion order is the authoritative order."""
    return tuple(history) + (entry,)


def latest(history):
    return history[-1] if history else None


def sorted_for_display(history, newest_first=False):
    # stable sort keeps insertion order for entries sharing a timestamp
    return sorted(history, key=lambda entry: entry.updated_at, reverse=newest_first)
