import contextlib
import io
import os
import tempfile
import unittest

import fallguard


def write_file(directory, name, text):
    path = os.path.join(directory, name)
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(text)
    return path


class LoadConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = self._tmp.name

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_nested_mapping_with_camel_case_keys(self) -> None:
        path = write_file(
            self.tmp,
            "fallguard.yaml",
            "fallguard:\n"
            "  directiveSpelling: strict_cases\n"
            "  attribute_spelling: clang::fallthrough\n"
            "  noreturn_functions: [panic, abort]\n"
            "  fallthroughMacros: [FALLTHROUGH]\n"
            "  tokenizer: builtin\n"
            "  clangArgs: [-DNDEBUG]\n"
            "  bogus: 1\n",
        )
        stderr = io.StringIO()
        with contextlib.redirect_stderr(stderr):
            config = fallguard.load_config_from_yaml(path)
        self.assertEqual(config.directive_spelling, "strict_cases")
        self.assertEqual(config.attribute_spelling, "clang::fallthrough")
        self.assertEqual(config.noreturn_functions, ["panic", "abort"])
        self.assertEqual(config.fallthrough_macros, ["FALLTHROUGH"])
        self.assertEqual(config.tokenizer, "builtin")
        self.assertEqual(config.clang_args, ["-DNDEBUG"])
        self.assertIn("unknown config key 'bogus'", stderr.getvalue())

    def test_empty_file_gives_defaults(self) -> None:
        config = fallguard.load_config_from_yaml(write_file(self.tmp, "empty.yaml", ""))
        self.assertEqual(config, fallguard.FallguardConfig())
        self.assertIn("__builtin_unreachable", config.noreturn_functions)

    def test_invalid_values_are_ignored(self) -> None:
        path = write_file(
            self.tmp,
            "bad.yaml",
            "directive_spelling: fall through\ntokenizer: gcc\nnoreturn_functions: panic\n",
        )
        stderr = io.StringIO()
        with contextlib.redirect_stderr(stderr):
            config = fallguard.load_config_from_yaml(path)
        self.assertEqual(config, fallguard.FallguardConfig())
        self.assertIn("invalid directive spelling", stderr.getvalue())
        self.assertIn("unknown tokenizer", stderr.getvalue())
        self.assertIn("must be a list", stderr.getvalue())

    def test_missing_file(self) -> None:
        with self.assertRaises(fallguard.ConfigError):
            fallguard.load_config_from_yaml(os.path.join(self.tmp, "missing.yaml"))

    def test_non_mapping_document(self) -> None:
        with self.assertRaises(fallguard.ConfigError):
            fallguard.load_config_from_yaml(write_file(self.tmp, "list.yaml", "- a\n- b\n"))

    def test_invalid_yaml(self) -> None:
        with self.assertRaises(fallguard.ConfigError):
            fallguard.load_config_from_yaml(write_file(self.tmp, "broken.yaml", "key: [unclosed\n"))

    def test_loaded_config_drives_the_rewrite(self) -> None:
        path = write_file(self.tmp, "cfg.yaml", "directive_spelling: strict_cases\n")
        config = fallguard.load_config_from_yaml(path)
        result = fallguard.transform_source("strict_cases(false); switch(a){case 1: f(); case 2: g();}", config=config)
        self.assertEqual(result.output, "switch(a){case 1: f(); break; case 2: g();}")


class DefaultClangArgsTests(unittest.TestCase):
    def test_environment_flags_are_appended(self) -> None:
        previous = os.environ.get("FALLGUARD_CLANG_ARGS")
        os.environ["FALLGUARD_CLANG_ARGS"] = "-I include -DMODE='a b'"
        try:
            args = fallguard._default_clang_args()
        finally:
            if previous is None:
                del os.environ["FALLGUARD_CLANG_ARGS"]
            else:
                os.environ["FALLGUARD_CLANG_ARGS"] = previous
        self.assertEqual(args, ["-x", "c++", "-std=c++17", "-I", "include", "-DMODE=a b"])


if __name__ == "__main__":
    unittest.main()
