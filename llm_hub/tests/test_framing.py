from llm_hub.providers.framing import NdjsonDecoder, SseFrame, SseLineDecoder


def _feed_all(decoder, chunks):
    out = []
    for chunk in chunks:
        out.extend(decoder.feed(chunk))
    out.extend(decoder.flush())
    return out


def _split(data: bytes, *cuts):
    pieces, prev = [], 0
    for cut in cuts:
        pieces.append(data[prev:cut])
        prev = cut
    pieces.append(data[prev:])
    return pieces


def test_sse_frames_are_independent_of_chunk_boundaries():
    raw = (
        'event: message\ndata: {"text": "你好"}\n\n'
        ": keep-alive\n"
        'data: {"text": "world"}\r\n\r\n'
        "data: [DONE]\n\n"
    ).encode("utf-8")
    expected = _feed_all(SseLineDecoder(), [raw])
    assert expected == [
        SseFrame(data='{"text": "你好"}', event="message"),
        SseFrame(data='{"text": "world"}', event=None),
        SseFrame(data="[DONE]", event=None),
    ]

    for cut in range(1, len(raw)):
        assert _feed_all(SseLineDecoder(), _split(raw, cut)) == expected
    for a in range(1, len(raw), 7):
        for b in range(a + 1, len(raw), 5):
            assert _feed_all(SseLineDecoder(), _split(raw, a, b)) == expected


def test_sse_byte_at_a_time():
    raw = "data: 中文内容\n\n".encode("utf-8")
    decoder = SseLineDecoder()
    frames = []
    for i in range(len(raw)):
        frames.extend(decoder.feed(raw[i : i + 1]))
    assert frames == [SseFrame(data="中文内容")]


def test_sse_ignores_id_and_retry_and_keeps_bare_json_lines():
    decoder = SseLineDecoder()
    frames = decoder.feed(b'id: 7\nretry: 1000\n{"error": {"message": "bad key"}}\n')
    assert frames == [SseFrame(data='{"error": {"message": "bad key"}}')]


def test_sse_flush_emits_unterminated_last_line():
    decoder = SseLineDecoder()
    assert decoder.feed(b"data: [DO") == []
    assert decoder.feed(b"NE]") == []
    assert decoder.flush() == [SseFrame(data="[DONE]")]
    assert decoder.flush() == []


def test_ndjson_lines_split_anywhere():
    raw = b'{"a": 1}\n\n{"b": "\xc3\xa9"}\n{"c": 3}'
    expected = ['{"a": 1}', '{"b": "é"}', '{"c": 3}']
    for cut in range(1, len(raw)):
        assert _feed_all(NdjsonDecoder(), _split(raw, cut)) == expected


def test_sse_bare_carriage_return_line_endings():
    raw = b"event: message\rdata: one\r\rdata: two\r\n\r\ndata: three\n\n"
    expected = [
        SseFrame(data="one", event="message"),
        SseFrame(data="two"),
        SseFrame(data="three"),
    ]
    assert _feed_all(SseLineDecoder(), [raw]) == expected
    for cut in range(1, len(raw)):
        assert _feed_all(SseLineDecoder(), _split(raw, cut)) == expected


def test_sse_carriage_return_frames_are_emitted_without_waiting_for_eof():
    decoder = SseLineDecoder()
    assert decoder.feed(b"data: a\r") == []
    assert decoder.feed(b"\r") == [SseFrame(data="a")]
    assert decoder.feed(b"data: b\r\n") == [SseFrame(data="b")]
