from mcpbridge.services import path_resolver


def test_placeholder_matches_exactly_one_segment():
    assert path_resolver.matches("/posts/{id}", "/posts/42")
    assert path_resolver.matches("/posts/{id}", "/posts/abc")
    assert not path_resolver.matches("/posts/{id}", "/posts/42/comments")
    assert not path_resolver.matches("/posts/{id}", "/posts")


def test_literal_segments_must_be_equal():
    assert path_resolver.matches("/repos/{owner}/{repo}", "/repos/octo/hello")
    assert not path_resolver.matches("/repos/{owner}/{repo}", "/users/octo/hello")


def test_template_query_defaults_do_not_affect_matching():
    assert path_resolver.matches("/search?per_page=10", "/search")


def test_match_filters_by_method_and_first_wins():
    candidates = [
        ("POST", "/users", "create"),
        ("GET", "/users/{id}", "read"),
        ("GET", "/users/me", "me"),
    ]
    assert path_resolver.match(candidates, "get", "/users/me") == "read"
    assert path_resolver.match(candidates, "POST", "/users") == "create"
    assert path_resolver.match(candidates, "DELETE", "/users/1") is None


def test_resolve_substitutes_placeholders_and_keeps_literals():
    assert path_resolver.resolve("/repos/{owner}/{repo}/issues", "/repos/octo/hello/issues") == (
        "/repos/octo/hello/issues"
    )


def test_resolve_falls_back_to_template_on_segment_mismatch():
    assert path_resolver.resolve("/posts/{id}", "/posts/1/comments") == "/posts/{id}"


def test_inbound_query_overrides_template_defaults():
    merged = path_resolver.merge_query("/search?per_page=10&sort=asc", [("per_page", "50"), ("q", "x")])
    assert merged == {"per_page": "50", "sort": "asc", "q": "x"}


def test_join_url_uses_single_slash():
    assert path_resolver.join_url("https://api.example.com/v1/", "/users") == "https://api.example.com/v1/users"
    assert path_resolver.join_url("https://api.example.com", "users") == "https://api.example.com/users"
