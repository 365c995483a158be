import unittest

from timeline_sync.connector_client import ListPage
from timeline_sync.errors import ProtocolError
from timeline_sync.pagination import (
    MAX_PAGES,
    fetch_object_list_all,
    list_payload_to_array,
    normalize_next_api_path,
)


INSTANCE_URL = "https://learn.example.edu"


class _PagedClient:
    def __init__(self, pages: dict[str, ListPage]) -> None:
        self.pages = pages
        self.calls: list[str] = []

    def list_page(self, api_path: str) -> ListPage:
        self.calls.append(api_path)
        return self.pages[api_path]


class _EndlessClient:
    def __init__(self) -> None:
        self.calls = 0

    def list_page(self, api_path: str) -> ListPage:
        self.calls += 1
        return ListPage(next=f"/d2l/api/le/1.80/things/?bookmark={self.calls}", objects=[self.calls])


class NormalizeNextApiPathTests(unittest.TestCase):
    def test_relative_paths(self) -> None:
        self.assertEqual(normalize_next_api_path(INSTANCE_URL, "/d2l/api/le/1.80/x/?b=2"), "/d2l/api/le/1.80/x/?b=2")
        self.assertEqual(normalize_next_api_path(INSTANCE_URL, " d2l/api/le/1.80/x/ "), "/d2l/api/le/1.80/x/")

    def test_absolute_url_on_same_host(self) -> None:
        self.assertEqual(
            normalize_next_api_path(INSTANCE_URL, "https://LEARN.example.edu/d2l/api/le/1.80/x/?bookmark=5"),
            "/d2l/api/le/1.80/x/?bookmark=5",
        )

    def test_absolute_url_on_other_host_is_rejected(self) -> None:
        with self.assertRaises(ProtocolError) as ctx:
            normalize_next_api_path(INSTANCE_URL, "https://evil.example.com/d2l/api/le/1.80/x/")
        self.assertEqual(ctx.exception.code, "calendar_pagination_host_mismatch")

    def test_non_api_paths_are_rejected(self) -> None:
        for value in ("https://learn.example.edu/d2l/home", "/somewhere/else", "ftp://learn.example.edu/d2l/api/"):
            with self.subTest(value=value):
                with self.assertRaises(ProtocolError) as ctx:
                    normalize_next_api_path(INSTANCE_URL, value)
                self.assertEqual(ctx.exception.code, "calendar_pagination_invalid_next")


class FetchObjectListAllTests(unittest.TestCase):
    def test_follows_next_until_exhausted(self) -> None:
        client = _PagedClient(
            {
                "/d2l/api/le/1.80/quizzes/": ListPage(next="https://learn.example.edu/d2l/api/le/1.80/quizzes/?b=2", objects=[1, 2]),
                "/d2l/api/le/1.80/quizzes/?b=2": ListPage(next=None, objects=[3]),
            }
        )
        objects = fetch_object_list_all(client, INSTANCE_URL, "/d2l/api/le/1.80/quizzes/")
        self.assertEqual(objects, [1, 2, 3])
        self.assertEqual(len(client.calls), 2)

    def test_endless_next_stops_after_max_pages(self) -> None:
        client = _EndlessClient()
        with self.assertRaises(ProtocolError) as ctx:
            fetch_object_list_all(client, INSTANCE_URL, "/d2l/api/le/1.80/things/")
        self.assertEqual(ctx.exception.code, "pagination_excessive")
        self.assertEqual(client.calls, MAX_PAGES)

    def test_list_payload_to_array(self) -> None:
        self.assertEqual(list_payload_to_array([1, 2]), [1, 2])
        self.assertEqual(list_payload_to_array({"Objects": [3]}), [3])
        self.assertEqual(list_payload_to_array({"Items": [3]}), [])
        self.assertEqual(list_payload_to_array(None), [])


if __name__ == "__main__":
    unittest.main()
