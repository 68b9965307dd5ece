import threading


def quote(val):
    return "'" + str(val) + "'" if val is not None else "None"


class StringerMixin:

    def __repr__(self):
        """
        outputs the class name and the object dictionary
        in key sorted order
        """
        return type(self).__name__ + self._sorted_items_string()

    def _sorted_items_string(self):
        return "{" + ", ".join([("'" + str(key)) + "'" + ": " + (quote(val))
                                for key, val in sorted(self.__dict__.items())]) + "}"


class CommonEqualityMixin(object):
    """  a deep equals comparison for value objects. """
    local = threading.local()

    def __eq__(self, other):
        if not hasattr(CommonEqualityMixin.local, 'seen'):
            CommonEqualityMixin.local.seen = []
        seen = CommonEqualityMixin.local.seen
        return hasattr(other, '__dict__') and isinstance(other, self.__class__) \
            and self._dicts_equal(other, seen)

    def _dicts_equal(self, other, seen):
        p = (id(self), id(other))
        if p in seen:
            raise ValueError("recursive comparison of %s" % type(self).__name__)
        try:
            seen.append(p)
            result = self.__dict__ == other.__dict__
        finally:
            seen.pop()
        return result

    def __ne__(self, other):
        return not self.__eq__(other)

    __hash__ = None


class ValueObject(StringerMixin, CommonEqualityMixin):
    """
    A plain record of public attributes, compared by value.
    as_dict() converts the record (and any nested records, lists and dicts) into plain
    builtins, ready for JSON serialization at an outer boundary.
    """

    def as_dict(self):
        return {key: _plain(value) for key, value in self.__dict__.items() if not key.startswith('_')}


def _plain(value):
    if isinstance(value, ValueObject):
        return value.as_dict()
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value
