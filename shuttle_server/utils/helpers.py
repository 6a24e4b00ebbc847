from flask import jsonify

from shuttle_server.exception import ValidationError


def respond_error(message_or_dict, status=400, code=None):
    """Return a standardized error response."""
    if isinstance(message_or_dict, dict):
        body = {'success': False, 'errors': message_or_dict}
    else:
        body = {'success': False, 'error': message_or_dict}
    if code:
        body['code'] = code
    return jsonify(body), status


def respond_success(payload=None, status=200):
    if payload is None:
        payload = {}
    body = {'success': True}
    if isinstance(payload, dict):
        body.update(payload)
    else:
        body['data'] = payload
    return jsonify(body), status


def parse_int(value, field):
    """Coerce an id-like value to int or raise ValidationError naming the field."""
    if isinstance(value, bool):
        raise ValidationError(f'{field} must be an integer', field=field)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be an integer', field=field)


def parse_optional_int(value, field):
    if value is None or value == '':
        return None
    return parse_int(value, field)


def parse_pagination(args, default_limit=50, max_limit=200):
    """Parse limit/before/after id cursors from query args.

    Returns (limit, before, after). Raises ValidationError with a field map.
    """
    errors = {}
    limit = default_limit
    before = after = None
    try:
        limit = int(args.get('limit', default_limit))
        if limit < 1 or limit > max_limit:
            errors['limit'] = f'limit must be between 1 and {max_limit}'
    except (TypeError, ValueError):
        errors['limit'] = 'limit must be an integer'
    for name in ('before', 'after'):
        raw = args.get(name)
        if raw in (None, ''):
            continue
        try:
            value = int(raw)
            if value < 0:
                errors[name] = f'{name} must be >= 0'
            elif name == 'before':
                before = value
            else:
                after = value
        except (TypeError, ValueError):
            errors[name] = f'{name} must be an integer'
    if errors:
        raise ValidationError('Invalid pagination', **errors)
    return limit, before, after


def parse_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')
