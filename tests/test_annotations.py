import pytest

from kubesync.annotations import get_annotation_csvs, has_annotation_option


def new_pod():
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": "my-pod"},
        "spec": {"containers": [{"name": "nginx", "image": "nginx:1.7.9"}]},
    }


def example(val):
    pod = new_pod()
    pod["metadata"]["annotations"] = {"foo": val}
    return pod


@pytest.mark.parametrize(
    "obj, key, val, want_vals, want",
    [
        (new_pod(), "foo", "bar", [], False),
        (example(""), "foo", "bar", [], False),
        (example("bar"), "foo", "bar", ["bar"], True),
        (example("bar,bar"), "foo", "bar", ["bar"], True),
        (example("bar,baz"), "foo", "baz", ["bar", "baz"], True),
        (example("bar "), "foo", "bar", ["bar"], True),
    ],
    ids=["Nil", "Empty", "Single", "DeDup", "Double", "Spaces"],
)
def test_has_annotation_option(obj, key, val, want_vals, want):
    assert sorted(get_annotation_csvs(obj, key)) == sorted(want_vals)
    assert has_annotation_option(obj, key, val) is want


def test_order_of_first_appearance():
    assert get_annotation_csvs(example("b, a ,b,c"), "foo") == ["b", "a", "c"]