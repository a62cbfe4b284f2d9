import secrets
import string

from django.utils import timezone

BASE36_ALPHABET = string.digits + string.ascii_uppercase
SUFFIX_LENGTH = 6


class SystemClock:
    def now(self):
        return timezone.now()


def _base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


def _random_suffix(length: int = SUFFIX_LENGTH) -> str:
    return "".join(secrets.choice(BASE36_ALPHABET) for _ in range(length))


def _timestamp_ms(now) -> int:
    return int(now.timestamp() * 1000)


def generate_request_id(now, offset: int = 0) -> str:
    # offset keeps ids of parts created in the same millisecond ordered
    return f"REQ-{_base36(_timestamp_ms(now) + offset)}-{_random_suffix()}"


def generate_internal_part_id(now, offset: int = 0) -> str:
    return f"PART-{_base36(_timestamp_ms(now) + offset)}-{_random_suffix()}"


def generate_set_id(now) -> str:
    return f"SET-{_base36(_timestamp_ms(now))}-{_random_suffix()}"
