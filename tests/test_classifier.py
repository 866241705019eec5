import unittest

import fallguard

TK = fallguard.TerminatorKind


def segments(source, config=None):
    result = fallguard.transform_source(source, config=config)
    return result.regions[0].cases


def terminators(source, config=None):
    return [segment.terminator for segment in segments(source, config)]


class TerminatorKindTests(unittest.TestCase):
    def test_jump_statements(self) -> None:
        source = (
            "switch(a){case 1: break; case 2: return; case 3: goto out; case 4: continue;"
            " case 5: throw 1; case 6: co_return; case 7: f();}"
        )
        self.assertEqual(
            terminators(source),
            [TK.BREAK, TK.RETURN, TK.GOTO, TK.CONTINUE, TK.THROW, TK.RETURN, None],
        )

    def test_compound_is_unwrapped_one_level(self) -> None:
        source = "switch(a){case 1: { f(); break; } case 2: { { break; } } case 3: { f(); throw 2; } case 4: g();}"
        self.assertEqual(terminators(source), [TK.BREAK, None, TK.THROW, None])

    def test_conditional_jump_does_not_terminate(self) -> None:
        source = "switch(a){case 1: if (x) return; case 2: while (y) break; case 3: g();}"
        self.assertEqual(terminators(source), [None, None, None])

    def test_attributed_and_labeled_jumps(self) -> None:
        source = "switch(a){case 1: [[likely]] return; case 2: done: break; case 3: g();}"
        self.assertEqual(terminators(source), [TK.RETURN, TK.BREAK, None])

    def test_terminator_must_be_last(self) -> None:
        source = "switch(a){case 1: break; f(); case 2: g();}"
        cases = segments(source)
        self.assertFalse(cases[0].terminated)

    def test_default_noreturn_functions(self) -> None:
        source = (
            "switch(a){case 1: abort(); case 2: std::exit(1); case 3: ::exit(2);"
            " case 4: Foo::exit(3); case 5: __builtin_unreachable(); case 6: g();}"
        )
        self.assertEqual(
            terminators(source),
            [TK.NORETURN_CALL, TK.NORETURN_CALL, TK.NORETURN_CALL, None, TK.NORETURN_CALL, None],
        )

    def test_call_result_used_is_not_a_noreturn_call(self) -> None:
        self.assertEqual(terminators("switch(a){case 1: x = exit(1); case 2: g();}"), [None, None])

    def test_configured_noreturn_functions_replace_defaults(self) -> None:
        config = fallguard.FallguardConfig(noreturn_functions=["panic", "fw::halt"])
        source = "switch(a){case 1: panic(\"x\"); case 2: fw::halt(); case 3: abort(); case 4: g();}"
        self.assertEqual(terminators(source, config), [TK.NORETURN_CALL, TK.NORETURN_CALL, None, None])

    def test_noreturn_declarations_in_translation_unit(self) -> None:
        source = (
            "[[noreturn]] void fatal(const char *msg);\n"
            "void die() __attribute__((noreturn));\n"
            "_Noreturn void stop(int code);\n"
            "int f(int a) {\n"
            "  switch (a) {\n"
            "  case 1: fatal(\"x\");\n"
            "  case 2: die();\n"
            "  case 3: stop(1);\n"
            "  case 4: g();\n"
            "  }\n"
            "  return 0;\n"
            "}\n"
        )
        self.assertEqual(terminators(source), [TK.NORETURN_CALL, TK.NORETURN_CALL, TK.NORETURN_CALL, None])

    def test_noreturn_name_from_another_namespace_does_not_match(self) -> None:
        source = (
            "namespace a { [[noreturn]] void stop(); }\n"
            "namespace b { void stop(); }\n"
            "void f(int x) {\n"
            "  switch (x) {\n"
            "  case 1: b::stop();\n"
            "  case 2: a::stop();\n"
            "  case 3: stop();\n"
            "  case 4: g();\n"
            "  }\n"
            "}\n"
        )
        self.assertEqual(terminators(source), [None, TK.NORETURN_CALL, None, None])
        governed = fallguard.transform_source(
            "namespace a { [[noreturn]] void stop(); } namespace b { void stop(); }\n"
            "fall_through(false); switch(x){case 1: b::stop(); case 2: g();}"
        )
        self.assertEqual([i.labels for i in governed.injections], ["case 1:"])

    def test_overloaded_noreturn_name_is_ambiguous(self) -> None:
        source = (
            "[[noreturn]] void fail(const char *msg);\n"
            "void fail(int code, bool fatal);\n"
            "void f(int x) {\n"
            "  switch (x) {\n"
            "  case 1: fail(1, true);\n"
            "  case 2: fail(\"x\");\n"
            "  case 3: g();\n"
            "  }\n"
            "}\n"
        )
        self.assertEqual(terminators(source), [None, None, None])

    def test_spaced_noreturn_attribute(self) -> None:
        source = "[ [noreturn] ] void halt();\nvoid f(int x) { switch (x) { case 1: halt(); case 2: g(); } }\n"
        self.assertEqual(terminators(source), [TK.NORETURN_CALL, None])

    def test_collect_noreturn_functions(self) -> None:
        stream = fallguard.TokenStream(fallguard.tokenize(
            "namespace app { [[noreturn, gnu::cold]] void std_fail(); }\n"
            "[[nodiscard]] int value();\n"
            "__declspec(noreturn) void ms_fail(int);\n"
        ))
        scan = fallguard.StructuralScan(stream)
        self.assertEqual(fallguard.collect_noreturn_functions(stream, scan), {"app::std_fail", "ms_fail"})

    def test_collect_function_declarations(self) -> None:
        stream = fallguard.TokenStream(fallguard.tokenize(
            "namespace outer { namespace inner { [[noreturn]] void halt(); } }\n"
            "namespace { [[noreturn]] void hidden(); }\n"
            "extern \"C\" { void c_exit(int) __attribute__((noreturn)); }\n"
            "template <class T> struct Box { [[noreturn]] void fail(); void get(); };\n"
            "int value = compute(3);\n"
            "void run() { local(); }\n"
        ))
        scan = fallguard.StructuralScan(stream)
        declarations = fallguard.collect_function_declarations(stream, scan)
        self.assertEqual(declarations.noreturn, {"outer::inner::halt", "hidden", "c_exit", "Box::fail"})
        self.assertEqual(declarations.ordinary, {"Box::get", "run"})
        self.assertTrue(declarations.is_noreturn("halt"))
        self.assertTrue(declarations.is_noreturn("inner::halt"))
        self.assertFalse(declarations.is_noreturn("other::halt"))
        self.assertFalse(declarations.is_noreturn("halt", rooted=True))
        self.assertTrue(declarations.is_noreturn("hidden", rooted=True))


class FallthroughMarkerTests(unittest.TestCase):
    def test_markers(self) -> None:
        config = fallguard.FallguardConfig(fallthrough_macros=["FALLTHROUGH"])
        source = (
            "switch(a){case 1: f(); [[fallthrough]]; case 2: g(); __attribute__((fallthrough));"
            " case 3: h(); FALLTHROUGH; case 4: i(); [[maybe_unused]] int z; case 5: j();}"
        )
        flags = [segment.has_fallthrough_attr for segment in segments(source, config)]
        self.assertEqual(flags, [True, True, True, False, False])

    def test_custom_attribute_spelling(self) -> None:
        config = fallguard.FallguardConfig(attribute_spelling="clang::fallthrough")
        source = "switch(a){case 1: f(); [[clang::fallthrough]]; case 2: g(); [[fallthrough]]; case 3: h();}"
        flags = [segment.has_fallthrough_attr for segment in segments(source, config)]
        self.assertEqual(flags, [True, False, False])

    def test_marker_must_be_last_statement(self) -> None:
        source = "switch(a){case 1: [[fallthrough]]; f(); case 2: g();}"
        self.assertFalse(segments(source)[0].has_fallthrough_attr)


if __name__ == "__main__":
    unittest.main()
