import unittest

import fallguard


def scan_source(source):
    stream = fallguard.TokenStream(fallguard.tokenize(source))
    return stream, fallguard.StructuralScan(stream)


def index_of(stream, text, occurrence=0):
    found = [i for i, t in enumerate(stream.tokens) if t.text == text and not t.is_trivia]
    return found[occurrence]


class TokenStreamTests(unittest.TestCase):
    def setUp(self) -> None:
        # a, ' ', /* c */, ' ', b, ;
        self.stream = fallguard.TokenStream(fallguard.tokenize("a /* c */ b;"))

    def test_significant_navigation(self) -> None:
        self.assertEqual(len(self.stream), 6)
        self.assertEqual(self.stream.next_significant(1), 4)
        self.assertEqual(self.stream.prev_significant(4), 0)
        self.assertIsNone(self.stream.prev_significant(0))
        self.assertEqual(self.stream.next_significant(6), 6)
        self.assertTrue(self.stream.is_trivia(2))
        self.assertEqual(self.stream.significant_indices(0, 6), [0, 4, 5])

    def test_peek_seek_advance(self) -> None:
        self.assertEqual(self.stream.peek().text, "a")
        self.assertEqual(self.stream.advance().text, "a")
        self.assertEqual(self.stream.position, 1)
        self.stream.seek(4)
        self.assertEqual(self.stream.peek().text, "b")
        self.assertEqual(self.stream.peek(1).text, ";")
        self.stream.seek(100)
        self.assertIsNone(self.stream.peek())
        self.assertIsNone(self.stream.advance())

    def test_text_slices(self) -> None:
        self.assertEqual(self.stream.text(0, 3), "a /* c */")
        self.assertEqual(self.stream.source_text(), "a /* c */ b;")


class StructuralScanTests(unittest.TestCase):
    def test_depths_and_partners(self) -> None:
        stream, scan = scan_source("void f() { if (a) { g(); } }")
        outer = index_of(stream, "{", 0)
        inner = index_of(stream, "{", 1)
        self.assertEqual(scan.match(outer), index_of(stream, "}", 1))
        self.assertEqual(scan.match(inner), index_of(stream, "}", 0))
        self.assertEqual(scan.match(scan.match(inner)), inner)
        self.assertEqual(scan.brace_depth(outer), 0)
        self.assertEqual(scan.brace_depth(index_of(stream, "g")), 2)
        self.assertEqual(scan.paren_depth(index_of(stream, "a")), 1)
        self.assertEqual(scan.depth(index_of(stream, "a")), 2)
        self.assertEqual(scan.brace_depth(scan.match(outer)), 0)

    def test_braces_inside_literals_do_not_count(self) -> None:
        stream, scan = scan_source("void f() { puts(\"}\"); char c = '{'; /* } */ }")
        literal = index_of(stream, '"}"')
        self.assertTrue(scan.is_literal_or_comment(literal))
        self.assertFalse(scan.is_literal_or_comment(index_of(stream, "puts")))
        self.assertEqual(scan.match(index_of(stream, "{")), len(stream) - 1)

    def test_attribute_brackets_pair_up(self) -> None:
        stream, scan = scan_source("[[nodiscard]] int v[2];")
        self.assertEqual(scan.match(0), index_of(stream, "]]"))

    def test_spaced_attribute_brackets_pair_up(self) -> None:
        stream, scan = scan_source("[ [noreturn] ] void f(int v[2]);")
        self.assertEqual(scan.match(0), index_of(stream, "] ]"))
        self.assertEqual(scan.match(index_of(stream, "[")), index_of(stream, "]"))

    def test_unmatched_closer(self) -> None:
        with self.assertRaises(fallguard.MalformedInputError):
            scan_source("void f() { } }")

    def test_mismatched_pair(self) -> None:
        with self.assertRaises(fallguard.MalformedInputError):
            scan_source("void f( { )")

    def test_unclosed_block(self) -> None:
        with self.assertRaises(fallguard.MalformedInputError):
            scan_source("void f() { if (x) {")

    def test_unterminated_switch_body(self) -> None:
        with self.assertRaises(fallguard.UnterminatedSwitchBodyError) as ctx:
            scan_source("void f(int a) { switch (a) { case 1: break;")
        self.assertEqual(ctx.exception.location.col_start, 28)


if __name__ == "__main__":
    unittest.main()
