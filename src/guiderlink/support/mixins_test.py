import unittest

from hamcrest import assert_that, is_, is_not

from guiderlink.support.mixins import ValueObject, quote


class Point(ValueObject):
    def __init__(self, x, y, children=()):
        self.x = x
        self.y = y
        self.children = list(children)
        self._hidden = 'not exported'


class MixinsTest(unittest.TestCase):

    def test_quote(self):
        assert_that(quote(None), is_("None"))
        assert_that(quote(1), is_("'1'"))

    def test_equality(self):
        assert_that(Point(1, 2), is_(Point(1, 2)))
        assert_that(Point(1, 2), is_not(Point(2, 1)))
        assert_that(Point(1, 2) != Point(1, 3), is_(True))
        assert_that(Point(1, 2) == object(), is_(False))

    def test_repr(self):
        assert_that(repr(Point(1, None)), is_("Point{'_hidden': 'not exported', 'children': '[]', 'x': '1', 'y': None}"))

    def test_as_dict_is_nested_and_public(self):
        p = Point(1, 2, [Point(3, 4)])
        assert_that(p.as_dict(), is_({'x': 1, 'y': 2, 'children': [{'x': 3, 'y': 4, 'children': []}]}))
