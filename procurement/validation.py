from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation

from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime

from procurement.exceptions import ValidationError


def is_blank(value):
    return value is None or (isinstance(value, str) and not value.strip())


def validate_required(data, fields, prefix=""):
    missing = [f"{prefix}{field}" for field in fields if is_blank(data.get(field))]
    if missing:
        raise ValidationError(missing[0], f"{missing[0]} is required.", missing_fields=missing)


def text(data, field, default=""):
    value = data.get(field)
    if is_blank(value):
        return default
    return str(value).strip()


def integer(value, field, minimum=None):
    if isinstance(value, bool):
        raise ValidationError(field, f"{field} must be a whole number.")
    if isinstance(value, float) and not value.is_integer():
        raise ValidationError(field, f"{field} must be a whole number.")
    try:
        number = int(str(value).strip()) if isinstance(value, str) else int(value)
    except (TypeError, ValueError):
        raise ValidationError(field, f"{field} must be a whole number.") from None
    if minimum is not None and number < minimum:
        raise ValidationError(field, f"{field} must be at least {minimum}.", minimum=minimum)
    return number


def optional_integer(data, field, minimum=None):
    value = data.get(field)
    if is_blank(value):
        return None
    return integer(value, field, minimum=minimum)


def decimal_value(value, field, minimum=None):
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(field, f"{field} must be a number.") from None
    if not number.is_finite():
        raise ValidationError(field, f"{field} must be a number.")
    if minimum is not None and number < minimum:
        raise ValidationError(field, f"{field} must be at least {minimum}.", minimum=str(minimum))
    return number


def to_date(value, field):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    parsed = None
    if isinstance(value, str):
        try:
            parsed = parse_date(value.strip())
            if parsed is None:
                moment = parse_datetime(value.strip())
                parsed = moment.date() if moment else None
        except ValueError:
            parsed = None
    if parsed is None:
        raise ValidationError(field, f"{field} must be a date (YYYY-MM-DD).")
    return parsed


def to_datetime(value, field):
    moment = None
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, date):
        moment = datetime.combine(value, time.min)
    elif isinstance(value, str):
        try:
            moment = parse_datetime(value.strip())
            if moment is None:
                day = parse_date(value.strip())
                moment = datetime.combine(day, time.min) if day else None
        except ValueError:
            moment = None
    if moment is None:
        raise ValidationError(field, f"{field} must be a date or datetime.")
    if timezone.is_naive(moment):
        moment = timezone.make_aware(moment)
    return moment


def choice(value, field, choices):
    if value not in choices.values:
        raise ValidationError(field, f"{field} must be one of: {', '.join(choices.values)}.", allowed=list(choices.values))
    return choices(value).value


def boolean(value, field):
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ValidationError(field, f"{field} must be true or false.")
