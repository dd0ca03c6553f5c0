import copy

import pytest

from cmark_translate.decoder import StructuralDecoder
from cmark_translate.encoder import StructuralEncoder
from cmark_translate.errors import MalformedTranslationResponse
from cmark_translate.structures import NodeKind, Text

from conftest import document, element, paragraph, text


def encode(root):
    tree = document(root)
    unit = StructuralEncoder().encode_root(tree, (0,))
    assert unit is not None
    return tree, unit


@pytest.mark.parametrize(
    "root",
    [
        paragraph(text("plain")),
        paragraph(text("a "), element(NodeKind.EMPHASIS, text("b")), text(" c")),
        paragraph(element(NodeKind.STRONG, text("x"), element(NodeKind.EMPHASIS, text("y")))),
        paragraph(text("gone "), element(NodeKind.STRIKETHROUGH, text("old"))),
        paragraph(text("see "), element(NodeKind.LINK, text("docs"), href="/d", title="Docs")),
        paragraph(text("x "), element(NodeKind.IMAGE, text("alt"), src="a.png", title=None)),
        paragraph(text("run "), element(NodeKind.CODE_SPAN, literal="ls -l", markup="`")),
        paragraph(text("a"), element(NodeKind.LINE_BREAK), text("b")),
        paragraph(text("a"), element(NodeKind.SOFT_BREAK), text("b")),
        paragraph(text("x "), element(NodeKind.HTML_INLINE, literal="<br>")),
        paragraph(text("x "), element(NodeKind.OPAQUE, literal="<https://a.b>")),
        paragraph(text("empty "), element(NodeKind.EMPHASIS)),
        element(NodeKind.HEADING, text("Title & <more>"), level=2, setext=None),
        element(NodeKind.CELL, text("a "), element(NodeKind.RUN, text("b"), font=None)),
    ],
)
def test_untranslated_string_restores_the_same_children(root):
    original = copy.deepcopy(root)
    tree, unit = encode(root)

    decoder = StructuralDecoder()
    assert decoder.decode(unit, unit.tagged) == original.children
    decoder.apply(unit, unit.tagged)
    assert tree.children[0] == original


def test_translated_text_keeps_structure():
    tree, unit = encode(
        paragraph(
            text("Hello "),
            element(NodeKind.STRONG, text("world")),
            text(", see "),
            element(NodeKind.LINK, text("here"), href="http://x", title=None),
            text("."),
        )
    )

    StructuralDecoder().apply(unit, "Hallo <m1>Welt</m1>, siehe <m2>hier</m2>.")

    assert tree.children[0].children == [
        Text("Hallo "),
        element(NodeKind.STRONG, text("Welt")),
        Text(", siehe "),
        element(NodeKind.LINK, text("hier"), href="http://x", title=None),
        Text("."),
    ]


def test_markers_may_be_reordered():
    tree, unit = encode(
        paragraph(
            element(NodeKind.EMPHASIS, text("red")),
            text(" "),
            element(NodeKind.STRONG, text("car")),
        )
    )

    StructuralDecoder().apply(unit, "<m2>voiture</m2> <m1>rouge</m1>")

    kinds = [child.kind for child in tree.children[0].children if not isinstance(child, Text)]
    assert kinds == [NodeKind.STRONG, NodeKind.EMPHASIS]


def test_entities_are_unescaped():
    tree, unit = encode(paragraph(text("a & b")))

    StructuralDecoder().apply(unit, "x &amp; y &lt;z&gt;")

    assert tree.children[0].children == [Text("x & y <z>")]


def test_void_marker_keeps_original_content():
    tree, unit = encode(
        paragraph(text("see "), element(NodeKind.IMAGE, text("alt"), src="a.png", title=None))
    )

    StructuralDecoder().apply(unit, "siehe <m1 />")

    image = tree.children[0].children[1]
    assert image.kind is NodeKind.IMAGE
    assert image.children == [Text("alt")]


@pytest.mark.parametrize(
    "translated, reason",
    [
        ("Hallo Welt", "missing markers 1"),
        ("<m1>a</m1><m1>b</m1>", "more than once"),
        ("<m1>a</m1><m7/>", "unknown marker index 7"),
        ("<m1>a", "never closed"),
        ("a</m1>", "does not match"),
        ("<m1/>", "lost its content"),
    ],
)
def test_malformed_strings_are_rejected(translated, reason):
    _, unit = encode(paragraph(element(NodeKind.EMPHASIS, text("x"))))

    with pytest.raises(MalformedTranslationResponse) as excinfo:
        StructuralDecoder().decode(unit, translated)

    assert reason in str(excinfo.value)
    assert excinfo.value.unit_id == unit.unit_id


def test_crossed_markers_are_rejected():
    _, unit = encode(
        paragraph(
            element(NodeKind.EMPHASIS, text("a")),
            element(NodeKind.STRONG, text("b")),
        )
    )

    with pytest.raises(MalformedTranslationResponse):
        StructuralDecoder().decode(unit, "<m1>a<m2>b</m1></m2>")


def test_void_kind_used_as_pair_is_rejected():
    _, unit = encode(
        paragraph(text("x "), element(NodeKind.CODE_SPAN, literal="y", markup="`"))
    )

    with pytest.raises(MalformedTranslationResponse, match="self-closing"):
        StructuralDecoder().decode(unit, "x <m1>y</m1>")


def test_failed_decode_leaves_tree_untouched():
    root = paragraph(element(NodeKind.EMPHASIS, text("x")))
    original = copy.deepcopy(root)
    tree, unit = encode(root)

    with pytest.raises(MalformedTranslationResponse):
        StructuralDecoder().apply(unit, "dropped")

    assert tree.children[0] == original


def test_translated_alt_text_is_spliced_into_the_image():
    image = element(NodeKind.IMAGE, text("logo"), src="logo.png", title=None)
    tree = document(paragraph(text("see "), image))
    unit = StructuralEncoder(translate_alt_text=True).encode_root(tree, (0,))
    decoder = StructuralDecoder(translate_alt_text=True)

    with pytest.raises(MalformedTranslationResponse, match="lost its content"):
        decoder.decode(unit, "siehe <m1/>")
    decoder.apply(unit, "siehe <m1>Logo</m1>")

    spliced = tree.children[0].children[1]
    assert spliced.kind is NodeKind.IMAGE
    assert spliced.children == [Text("Logo")]
    assert spliced.attrs["src"] == "logo.png"
