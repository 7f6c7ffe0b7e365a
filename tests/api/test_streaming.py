import json

from draftmate.api.services.providers.streaming import (
    FenceFilter,
    JsonFragmentBuffer,
    iter_sse_events,
    sse_data,
    strip_code_fences,
)


class TestSSE:
    """SSE行の解釈"""

    def test_sse_data_prefix(self):
        assert sse_data('data: {"a": 1}') == '{"a": 1}'
        assert sse_data('data:{"a": 1}') == '{"a": 1}'
        assert sse_data("event: ping") is None
        assert sse_data("") is None

    def test_events_until_done(self):
        lines = [
            ": keep-alive",
            'data: {"n": 1}',
            "",
            "event: update",
            'data: {"n": 2}',
            "data: not json",
            "data: [DONE]",
            'data: {"n": 3}',
        ]
        assert [e["n"] for e in iter_sse_events(lines)] == [1, 2]


class TestJsonFragmentBuffer:
    """行をまたぐJSONの組み立て"""

    def test_object_split_across_lines(self):
        buffer = JsonFragmentBuffer()
        assert buffer.feed("{") == []
        assert buffer.feed('"text": "hi"') == []
        assert buffer.feed("}") == [{"text": "hi"}]
        assert buffer.pending == ""

    def test_array_framing_releases_each_element(self):
        buffer = JsonFragmentBuffer()
        assert buffer.feed('[{"n": 1}') == [{"n": 1}]
        assert buffer.feed(",") == []
        assert buffer.feed('{"n": 2}]') == [{"n": 2}]

    def test_newline_delimited_objects(self):
        buffer = JsonFragmentBuffer()
        assert buffer.feed('{"n": 1}') == [{"n": 1}]
        assert buffer.feed('{"n": 2}') == [{"n": 2}]

    def test_whole_array_on_one_line(self):
        buffer = JsonFragmentBuffer()
        assert buffer.feed('[{"n": 1}, {"n": 2}]') == [{"n": 1}, {"n": 2}]


class TestFences:
    """コードフェンスの除去"""

    def test_strip_code_fences(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert strip_code_fences('```\n{"a": 1}\n```') == '{"a": 1}'
        assert strip_code_fences('{"a": 1}') == '{"a": 1}'

    def test_fence_filter_handles_split_fences(self):
        fence = FenceFilter()
        fragments = ["``", "`json\n", '{"a"', ": 1}\n``", "`"]
        out = [fence.feed(f) for f in fragments]
        out.append(fence.flush())
        joined = "".join(out)
        assert "`" not in joined
        assert json.loads(joined) == {"a": 1}

    def test_fence_filter_passes_plain_text(self):
        fence = FenceFilter()
        assert fence.feed('{"a": ') == '{"a":'
        assert fence.feed("2}") == " 2}"
        assert fence.flush() == ""
