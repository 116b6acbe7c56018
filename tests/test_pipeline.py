import pytest
from unittest.mock import patch

from push_audience.services.push import pipeline
from push_audience.services.push.pipeline import (
    MISSING,
    get_path,
    matches,
    prepare_steps,
    project,
    run_steps,
)


class TestPaths:
    """Test dotted path lookups."""

    def test_get_path_nested(self):
        doc = {"tk": {"ap": "x"}, "chr": {"c1": {"in": "true"}}}
        assert get_path(doc, "tk.ap") == "x"
        assert get_path(doc, "chr.c1.in") == "true"

    def test_get_path_missing(self):
        assert get_path({"tk": {}}, "tk.ap") is MISSING
        assert get_path({"tk": "x"}, "tk.ap") is MISSING

    def test_get_path_array_index(self):
        assert get_path({"tags": ["a", "b"]}, "tags.1") == "b"
        assert get_path({"tags": ["a"]}, "tags.3") is MISSING


class TestMatches:
    """Test restriction evaluation."""

    def test_implicit_equality_and_array_membership(self):
        doc = {"country": "DE", "tags": ["vip", "beta"]}
        assert matches(doc, {"country": "DE"})
        assert matches(doc, {"tags": "vip"})
        assert not matches(doc, {"tags": "gold"})

    def test_exists_and_ne_none(self):
        cond = {"tk.ap": {"$exists": True, "$ne": None}}
        assert matches({"tk": {"ap": "t"}}, cond)
        assert not matches({"tk": {"ap": None}}, cond)
        assert not matches({"tk": {}}, cond)

    def test_missing_field_equals_none(self):
        assert matches({}, {"tz": None})
        assert not matches({}, {"tz": {"$ne": None}})

    def test_in_nin(self):
        doc = {"uid": "u1"}
        assert matches(doc, {"uid": {"$in": ["u1", "u2"]}})
        assert not matches(doc, {"uid": {"$in": []}})
        assert matches(doc, {"uid": {"$nin": ["u3"]}})

    def test_comparisons(self):
        doc = {"age": 30}
        assert matches(doc, {"age": {"$gt": 20, "$lte": 30}})
        assert not matches(doc, {"age": {"$lt": 30}})
        # incomparable types never match
        assert not matches(doc, {"age": {"$gt": "20"}})
        assert not matches({}, {"age": {"$gte": 0}})

    def test_logical_operators(self):
        doc = {"a": 1, "b": 2}
        assert matches(doc, {"$or": [{"a": 2}, {"b": 2}]})
        assert not matches(doc, {"$and": [{"a": 1}, {"b": 3}]})
        assert matches(doc, {"$nor": [{"a": 2}, {"b": 3}]})

    def test_elem_match(self):
        doc = {"purchases": [{"sku": "x", "qty": 1}, {"sku": "y", "qty": 5}]}
        assert matches(doc, {"purchases": {"$elemMatch": {"sku": "y", "qty": {"$gt": 2}}}})
        assert not matches(doc, {"purchases": {"$elemMatch": {"sku": "x", "qty": 5}}})
        assert matches({"scores": [1, 7]}, {"scores": {"$elemMatch": {"$gt": 5}}})

    def test_not(self):
        assert matches({"a": 1}, {"a": {"$not": {"$gt": 5}}})

    def test_unknown_operator_raises(self):
        with pytest.raises(ValueError):
            matches({"a": 1}, {"a": {"$regex": "x"}})
        with pytest.raises(ValueError):
            matches({"a": 1}, {"$where": "true"})

    def test_unsatisfiable_marker(self):
        assert not matches({"uid": "u1"}, {"invalidgeo": True})


class TestProjectAndSteps:
    """Test projection and step execution."""

    def test_project_includes_only_present_paths(self):
        doc = {"uid": "u1", "tk": {"ap": "t"}, "name": "Ann", "secret": 1}
        assert project(doc, {"uid": 1, "tk": 1, "name": 1, "tz": 1}) == {
            "uid": "u1",
            "tk": {"ap": "t"},
            "name": "Ann",
        }

    def test_project_nested_path(self):
        doc = {"custom": {"plan": "pro", "other": 1}}
        assert project(doc, {"custom.plan": 1}) == {"custom": {"plan": "pro"}}

    def test_run_steps(self):
        steps = [
            {"$match": {"country": "DE"}},
            {"$project": {"uid": 1}},
        ]
        assert run_steps({"uid": "u1", "country": "DE"}, steps) == {"uid": "u1"}
        assert run_steps({"uid": "u2", "country": "FR"}, steps) is None

    def test_run_steps_unknown_stage(self):
        with pytest.raises(ValueError):
            run_steps({}, [{"$group": {}}])


class TestPreparedSteps:
    """Test membership lookups of prepared steps."""

    def test_large_uid_list_uses_index(self):
        uids = [f"u{n}" for n in range(5000)]
        [step] = prepare_steps([{"$match": {"uid": {"$in": uids}}}])

        with patch.object(pipeline, "_equals", wraps=pipeline._equals) as equals:
            matched = [
                n for n in range(0, 10000, 7) if matches({"uid": f"u{n}"}, step["$match"])
            ]

        assert matched == list(range(0, 5000, 7))
        equals.assert_not_called()

    def test_prepared_matches_like_plain(self):
        query = {
            "$or": [
                {"uid": {"$in": ["u1", None, {"a": 1}]}},
                {"tags": {"$nin": ["x", 2]}},
            ]
        }
        docs = [
            {"uid": "u1", "tags": "x"},
            {"tags": "x"},
            {"uid": {"a": 1}, "tags": "x"},
            {"uid": ["u7", "u1"], "tags": "x"},
            {"uid": "u2", "tags": ["x", "y"]},
            {"uid": "u2", "tags": ["y"]},
            {"uid": "u2", "tags": 2},
        ]
        [step] = prepare_steps([{"$match": query}])

        assert [matches(d, step["$match"]) for d in docs] == [
            matches(d, query) for d in docs
        ]
        assert [matches(d, query) for d in docs] == [
            True, True, True, True, False, True, False,
        ]

    def test_prepare_keeps_original_steps(self):
        steps = [{"$match": {"uid": {"$in": ["u1"]}}}, {"$project": {"uid": 1}}]

        prepared = prepare_steps(steps)

        assert type(steps[0]["$match"]["uid"]["$in"]) is list
        assert prepared[1] is steps[1]
        assert run_steps({"uid": "u1", "x": 1}, prepared) == {"uid": "u1"}
