import unittest

import fallguard

SOURCE = (
    "#include <cstdlib>\n"
    "// governed dispatch\n"
    "int dispatch(int a) {\n"
    "  fall_through(false);\n"
    "  switch (a) {\n"
    "  case 1:\n"
    "    work(\"{\");\n"
    "  case 2:\n"
    "    [[fallthrough]];\n"
    "  case 3:\n"
    "    std::abort();\n"
    "  default:\n"
    "    return 0;\n"
    "  }\n"
    "}\n"
)


@unittest.skipUnless(fallguard.clang_available(), "clang.cindex is not installed")
class ClangTokenizerTests(unittest.TestCase):
    def test_tokens_reproduce_source(self) -> None:
        tokens = fallguard.tokenize_with_clang(SOURCE, "dispatch.cpp")
        self.assertEqual("".join(t.text for t in tokens), SOURCE)
        kinds = {t.text: t.kind for t in tokens}
        self.assertIs(kinds["#include <cstdlib>"], fallguard.TokenKind.PREPROCESSOR)
        self.assertIs(kinds["[["], fallguard.TokenKind.ATTR_OPEN)
        self.assertIs(kinds["switch"], fallguard.TokenKind.KEYWORD)
        self.assertIs(kinds['"{"'], fallguard.TokenKind.STRING)

    def test_same_rewrite_as_builtin_lexer(self) -> None:
        builtin = fallguard.transform_source(SOURCE, "dispatch.cpp")
        clang = fallguard.transform_source(
            SOURCE, "dispatch.cpp", fallguard.FallguardConfig(tokenizer="clang")
        )
        self.assertEqual(clang.output, builtin.output)
        self.assertEqual([i.labels for i in clang.injections], ["case 1:"])


if __name__ == "__main__":
    unittest.main()
