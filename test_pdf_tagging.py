import logging
import zlib
from unittest.mock import MagicMock, patch

import pytest

import pdf_tagging
from pdf_content import Array, Dictionary, Name, Number, Operator, String, parse_content


def bdc(mcid, tag="Span"):
    return Operator("BDC", (Name(tag), Dictionary((("MCID", Number(mcid)),))))


TJ = Operator("Tj", (String("Hello"),))
TJ_ARRAY = Operator("TJ", (Array((String("W"), Number(120), String("orld"))),))
EMC = Operator("EMC")
BT = Operator("BT")
ET = Operator("ET")

# ============================================================================
# Unit Tests - Text Blocks
# ============================================================================


def test_extract_text_blocks():
    ops = [Operator("q"), BT, TJ, ET, Operator("Q"), BT, TJ_ARRAY, ET]

    blocks = pdf_tagging.extract_text_blocks(ops)

    assert len(blocks) == 2
    assert blocks[0].start == 1
    assert blocks[0].operators == [BT, TJ, ET]
    assert blocks[0].end == 4
    assert blocks[1].operators == [BT, TJ_ARRAY, ET]


def test_extract_text_blocks_unterminated_dropped(caplog):
    """A BT with no ET is not emitted as a block."""
    with caplog.at_level(logging.WARNING, logger="pdf_tagging"):
        blocks = pdf_tagging.extract_text_blocks([BT, TJ])

    assert blocks == []
    assert "never closed" in caplog.text


def test_extract_text_blocks_bt_before_et():
    """A BT that is followed by another BT is dropped; the second block stands."""
    blocks = pdf_tagging.extract_text_blocks([BT, TJ, BT, TJ_ARRAY, ET])

    assert len(blocks) == 1
    assert blocks[0].start == 2
    assert blocks[0].operators == [BT, TJ_ARRAY, ET]


def test_extract_text_blocks_stray_et_ignored():
    assert pdf_tagging.extract_text_blocks([ET, TJ]) == []


# ============================================================================
# Unit Tests - Tag Injection
# ============================================================================


def test_inject_mcids_wraps_each_text_operator():
    ops, next_mcid = pdf_tagging.inject_mcids([BT, TJ, TJ_ARRAY, ET], 0)

    assert ops == [BT, bdc(0), TJ, EMC, bdc(1), TJ_ARRAY, EMC, ET]
    assert next_mcid == 2


def test_inject_mcids_leaves_other_operators():
    tf = Operator("Tf", (Name("F1"), Number(12)))
    ops, next_mcid = pdf_tagging.inject_mcids([BT, tf, ET], 5)

    assert ops == [BT, tf, ET]
    assert next_mcid == 5


def test_inject_mcids_quote_operators():
    quote = Operator("'", (String("a"),))
    dquote = Operator('"', (Number(1), Number(2), String("b")))

    ops, next_mcid = pdf_tagging.inject_mcids([BT, quote, dquote, ET], 10)

    assert ops == [BT, bdc(10), quote, EMC, bdc(11), dquote, EMC, ET]
    assert next_mcid == 12


def test_inject_mcids_custom_tag():
    ops, _ = pdf_tagging.inject_mcids([BT, TJ, ET], 0, tag="P")
    assert ops[1] == bdc(0, tag="P")


def test_tag_operators_keeps_operators_outside_blocks():
    re_op = Operator("re", (Number(0), Number(0), Number(10), Number(10)))
    ops = [Operator("q"), re_op, Operator("f"), BT, TJ, ET, Operator("Q")]

    tagged, next_mcid = pdf_tagging.tag_operators(ops, 3)

    assert tagged == [
        Operator("q"),
        re_op,
        Operator("f"),
        BT,
        bdc(3),
        TJ,
        EMC,
        ET,
        Operator("Q"),
    ]
    assert next_mcid == 4


def test_tag_operators_unterminated_block_kept_untagged():
    ops = [BT, TJ, ET, BT, TJ]
    tagged, next_mcid = pdf_tagging.tag_operators(ops, 0)

    assert tagged == [BT, bdc(0), TJ, EMC, ET, BT, TJ]
    assert next_mcid == 1


def test_strip_marked_content():
    ops = [Operator("BMC", (Name("Artifact"),)), BT, bdc(4), TJ, EMC, ET, EMC]
    assert pdf_tagging.strip_marked_content(ops) == [BT, TJ, ET]


def test_find_mcids():
    ops = [bdc(2), EMC, Operator("BDC", (Name("Artifact"),)), bdc(9)]
    assert pdf_tagging.find_mcids(ops) == [2, 9]


# ============================================================================
# Unit Tests - Content Rewrite
# ============================================================================


def test_rewrite_content_simple():
    result = pdf_tagging.rewrite_content(b"BT /F1 12 Tf (Hello) Tj ET", 0)

    assert result.data == b"BT\n/F1 12 Tf\n/Span <</MCID 0>> BDC\n(Hello) Tj\nEMC\nET\n"
    assert result.mcids == [0]
    assert result.next_mcid == 1


def test_rewrite_content_preserves_inline_image_bytes():
    image = b"BI /W 2 /H 1 /BPC 8 /CS /G ID \x00\xff\x10 EI"
    data = b"BT (a) Tj ET\nq " + image + b"\nQ BT (b) Tj ET"

    result = pdf_tagging.rewrite_content(data, 7)

    assert image in result.data
    assert result.mcids == [7, 8]
    assert result.next_mcid == 9
    # Text after the image is still separated from EI
    assert image + b"\n" in result.data


def test_rewrite_content_whitespace_only_copied():
    result = pdf_tagging.rewrite_content(b"  % nothing here\n", 0)

    assert result.data == b"  % nothing here\n"
    assert result.mcids == []
    assert result.next_mcid == 0


def test_rewrite_content_font_named_bi():
    """A font resource named /BI does not hide the text that follows it."""
    result = pdf_tagging.rewrite_content(b"BT /BI 12 Tf (Hello) Tj ET BT (World) Tj ET", 0)

    assert result.mcids == [0, 1]
    assert b"/BI 12 Tf" in result.data


def test_rewrite_content_overlong_number():
    literal = b"1" * 400 + b".0"
    result = pdf_tagging.rewrite_content(b"BT " + literal + b" 0 Td (x) Tj ET", 0)

    assert result.mcids == [0]
    assert literal + b" 0 Td" in result.data


def test_rewrite_content_strip_existing():
    data = b"/P <</MCID 0>> BDC BT (a) Tj ET EMC"
    result = pdf_tagging.rewrite_content(data, 0, strip_existing=True)

    assert parse_content(result.data) == [BT, bdc(0), Operator("Tj", (String("a"),)), EMC, ET]


def test_rewrite_content_without_strip_keeps_existing():
    data = b"/Artifact BMC BT (a) Tj ET EMC"
    result = pdf_tagging.rewrite_content(data, 0)

    names = [op.name for op in parse_content(result.data)]
    assert names == ["BMC", "BT", "BDC", "Tj", "EMC", "ET", "EMC"]


def test_rewrite_content_round_trip_outside_blocks():
    """Parsing the rewritten stream without BDC/EMC gives the input operators."""
    data = b"q 0.5 g 0 0 612 792 re f BT /F1 9.5 Tf [(x) -20 (y)] TJ ET Q"
    result = pdf_tagging.rewrite_content(data, 0)

    assert pdf_tagging.strip_marked_content(parse_content(result.data)) == parse_content(data)


# ============================================================================
# Unit Tests - MCID Counter
# ============================================================================


def test_mcid_counter_advances():
    counter = pdf_tagging.McidCounter()
    assert counter.value == 0
    counter.advance_to(3)
    counter.advance_to(3)
    assert counter.value == 3


def test_mcid_counter_never_moves_backwards():
    counter = pdf_tagging.McidCounter(5)
    with pytest.raises(ValueError):
        counter.advance_to(4)
    assert counter.value == 5


def test_mcid_counter_rejects_negative_start():
    with pytest.raises(ValueError):
        pdf_tagging.McidCounter(-1)


# ============================================================================
# Unit Tests - Pipeline
# ============================================================================


def test_normalize_filters():
    assert pdf_tagging.normalize_filters(None) == []
    assert pdf_tagging.normalize_filters("/FlateDecode") == ["/FlateDecode"]
    assert pdf_tagging.normalize_filters("FlateDecode") == ["/FlateDecode"]
    assert pdf_tagging.normalize_filters(["/ASCII85Decode", "/FlateDecode"]) == [
        "/ASCII85Decode",
        "/FlateDecode",
    ]


def test_is_flate_encoded():
    assert pdf_tagging.is_flate_encoded(["/FlateDecode"]) is True
    assert pdf_tagging.is_flate_encoded(["/ASCII85Decode", "/FlateDecode"]) is True
    assert pdf_tagging.is_flate_encoded(["/LZWDecode"]) is False
    assert pdf_tagging.is_flate_encoded([]) is False


def test_build_pipeline_flate():
    inject = MagicMock()
    stages = pdf_tagging.build_pipeline(["/FlateDecode"], inject)
    assert stages == [pdf_tagging.inflate, inject, pdf_tagging.deflate]


def test_build_pipeline_unfiltered():
    inject = MagicMock()
    assert pdf_tagging.build_pipeline([], inject) == [inject]


def test_build_pipeline_unsupported_filter_warns(caplog):
    inject = MagicMock()
    with caplog.at_level(logging.WARNING, logger="pdf_tagging"):
        stages = pdf_tagging.build_pipeline(["/LZWDecode"], inject)

    assert stages == [inject]
    assert "/LZWDecode" in caplog.text


@patch("pdf_tagging.deflate")
@patch("pdf_tagging.inflate")
def test_pipeline_runs_inflate_inject_deflate_in_order(mock_inflate, mock_deflate):
    """Each stage gets the previous stage's output."""
    calls = []
    mock_inflate.side_effect = lambda data: calls.append(("inflate", data)) or b"plain"
    mock_deflate.side_effect = lambda data: calls.append(("deflate", data)) or b"packed"
    inject = MagicMock(side_effect=lambda data: calls.append(("inject", data)) or b"tagged")

    stages = pdf_tagging.build_pipeline(["/FlateDecode"], inject)
    output = pdf_tagging.run_pipeline(stages, b"raw")

    assert calls == [("inflate", b"raw"), ("inject", b"plain"), ("deflate", b"tagged")]
    assert output == b"packed"


def test_inflate_bad_data_raises_stream_error():
    with pytest.raises(pdf_tagging.StreamProcessingError):
        pdf_tagging.inflate(b"definitely not zlib")


def test_inflate_deflate():
    assert pdf_tagging.inflate(pdf_tagging.deflate(b"BT ET")) == b"BT ET"


def test_transform_stream_flate():
    counter = pdf_tagging.McidCounter(4)
    raw = zlib.compress(b"BT (a) Tj (b) Tj ET")

    result = pdf_tagging.transform_stream(raw, ["/FlateDecode"], counter)

    assert result.flate_encoded is True
    assert result.mcids == [4, 5]
    assert result.next_mcid == 6
    assert b"/Span <</MCID 4>> BDC" in zlib.decompress(result.data)
    # Only the owner moves the counter
    assert counter.value == 4


def test_transform_stream_unfiltered():
    counter = pdf_tagging.McidCounter()
    result = pdf_tagging.transform_stream(b"BT (a) Tj ET", [], counter)

    assert result.flate_encoded is False
    assert result.data.startswith(b"BT\n/Span <</MCID 0>> BDC\n")


def test_transform_stream_threads_counter_across_streams():
    """Two streams of two text operators each get [0, 1] and [2, 3]."""
    counter = pdf_tagging.McidCounter()
    assigned = []

    for data in (b"BT (a) Tj (b) Tj ET", b"BT [(c)] TJ (d) ' ET"):
        result = pdf_tagging.transform_stream(data, [], counter)
        counter.advance_to(result.next_mcid)
        assigned.append(result.mcids)

    assert assigned == [[0, 1], [2, 3]]
    assert counter.value == 4


def test_transform_stream_corrupt_flate_raises():
    counter = pdf_tagging.McidCounter()
    with pytest.raises(pdf_tagging.StreamProcessingError):
        pdf_tagging.transform_stream(b"garbage", ["/FlateDecode"], counter)
    assert counter.value == 0
