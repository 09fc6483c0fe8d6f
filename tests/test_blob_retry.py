from shared.retention.retry import delete_with_retry
from tests.conftest import FakeStorage


def test_delete_succeeds_first_try():
    s = FakeStorage()
    s.put_object("a/1.webp", b"x")
    assert delete_with_retry(s, "a/1.webp") is True
    assert s.delete_calls == ["a/1.webp"]
    assert "a/1.webp" not in s


def test_delete_retries_once_after_failure():
    s = FakeStorage()
    s.put_object("a/1.webp", b"x")
    s.fail_deletes["a/1.webp"] = 1
    assert delete_with_retry(s, "a/1.webp") is True
    assert s.delete_calls == ["a/1.webp", "a/1.webp"]
    assert "a/1.webp" not in s


def test_delete_gives_up_after_second_failure():
    s = FakeStorage()
    s.put_object("a/1.webp", b"x")
    s.fail_deletes["a/1.webp"] = 5
    assert delete_with_retry(s, "a/1.webp") is False
    # exactly two attempts, blob left for the next run's orphan pass
    assert len(s.delete_calls) == 2
    assert "a/1.webp" in s
