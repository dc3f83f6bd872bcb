"""
Tests for the navigation observer.
"""

from pulse.client.navigation import NavigationObserver


class TestNavigationObserver:
    def test_distinct_urls_notify_once(self):
        observer = NavigationObserver("https://a.test/")
        seen = []
        observer.subscribe(seen.append)

        assert observer.push_state("https://a.test/a") is True
        assert observer.replace_state("https://a.test/a") is False
        assert observer.pop_state("https://a.test/") is True

        assert seen == ["https://a.test/a", "https://a.test/"]
        assert observer.last_url == "https://a.test/"

    def test_initial_url_is_not_a_navigation(self):
        observer = NavigationObserver("https://a.test/")
        seen = []
        observer.subscribe(seen.append)

        observer.push_state("https://a.test/")

        assert seen == []

    def test_unsubscribe(self):
        observer = NavigationObserver()
        seen = []
        unsubscribe = observer.subscribe(seen.append)

        observer.push_state("/one")
        unsubscribe()
        unsubscribe()
        observer.push_state("/two")

        assert seen == ["/one"]

    def test_multiple_subscribers(self):
        observer = NavigationObserver()
        first, second = [], []
        observer.subscribe(first.append)
        observer.subscribe(second.append)

        observer.replace_state("/x")

        assert first == second == ["/x"]

    def test_observe_records_url_silently(self):
        observer = NavigationObserver()
        seen = []
        observer.subscribe(seen.append)

        observer.observe("/landing")

        assert seen == []
        assert observer.last_url == "/landing"
        assert observer.replace_state("/landing") is False
        assert observer.push_state("/next") is True
        assert seen == ["/next"]
