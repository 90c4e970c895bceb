import unittest
import io, sys, contextlib
from unittest.mock import patch, Mock

import ai_pdf_renamer as r


def _run_main(argv, **kwargs):
    buf=io.StringIO()
    with contextlib.redirect_stdout(buf), \
         contextlib.redirect_stderr(buf):
        try:
            rc=r.main(argv, **kwargs)
        except SystemExit as e:
            rc=e.code
            if not isinstance(rc, int):
                rc=1
    return rc, buf.getvalue()


class TestMainFatalPaths(unittest.TestCase):
    def tearDown(self):
        r._PROGRESS_ENABLED=True

    def test_no_patterns_exits_1(self):
        exit_fn=Mock()
        with patch.object(r, "check_dependencies", return_value=None), \
             patch.object(r, "run_batch") as batch:
            rc, out=_run_main([], exit_fn=exit_fn)

        self.assertEqual(rc, 1)
        exit_fn.assert_called_once_with(1)
        batch.assert_not_called()
        self.assertIn("usage:", out)
        self.assertIn("Examples:", out)

    def test_no_patterns_with_default_exit_raises(self):
        with patch.object(r, "check_dependencies", return_value=None), \
             patch.object(r, "run_batch") as batch:
            rc, _=_run_main([])
        self.assertEqual(rc, 1)
        batch.assert_not_called()

    def test_dependency_error_stops_before_any_file(self):
        exit_fn=Mock()
        with patch.object(r, "check_dependencies", return_value="error: gs is not installed. Please install it first"), \
             patch.object(r, "run_batch") as batch:
            rc, out=_run_main(["*.pdf"], exit_fn=exit_fn)

        self.assertEqual(rc, 1)
        exit_fn.assert_called_once_with(1)
        batch.assert_not_called()
        self.assertIn("gs is not installed", out)


class TestMainConfig(unittest.TestCase):
    def tearDown(self):
        r._PROGRESS_ENABLED=True

    def _config_for(self, argv):
        with patch.object(r, "check_dependencies", return_value=None) as deps, \
             patch.object(r, "run_batch") as batch:
            rc, out=_run_main(argv, exit_fn=Mock())
        self.assertEqual(rc, 0)
        cfg=batch.call_args.args[0]
        self.assertEqual(deps.call_args.args[0], cfg)
        return cfg, batch, out

    def test_defaults(self):
        cfg, batch, _=self._config_for(["a.pdf", "b*.pdf"])
        self.assertEqual(cfg, r.Config())
        self.assertEqual(batch.call_args.args[1], ["a.pdf", "b*.pdf"])
        self.assertFalse(batch.call_args.args[2].auto)

    def test_vision_overrides_model(self):
        cfg, _batch, out=self._config_for(["--model", "llama2", "a.pdf"])
        self.assertEqual(cfg.model, r.VISION_MODEL)
        self.assertIn("Switching to", out)

    def test_all_flags(self):
        cfg, batch, _=self._config_for(["--auto", "--prompt", "custom prompt", "--model", "llama2",
                                        "--novision", "--output", "renamed/", "a.pdf"])
        self.assertEqual(cfg, r.Config(auto=True, prompt="custom prompt", model="llama2",
                                       vision=False, output_dir="renamed"))
        self.assertTrue(batch.call_args.args[2].auto)

    def test_no_progress_flag(self):
        self._config_for(["--no-progress", "a.pdf"])
        self.assertFalse(r._PROGRESS_ENABLED)

    def test_per_file_failures_still_exit_0(self):
        with patch.object(r, "check_dependencies", return_value=None), \
             patch.object(r, "process_pdf", return_value=(r.FAILED, "ocr: OCR failed")), \
             patch.object(r.glob, "glob", return_value=["x.pdf", "y.pdf"]):
            rc, out=_run_main(["*.pdf"], exit_fn=Mock())
        self.assertEqual(rc, 0)
        self.assertEqual(out.count("Error processing"), 2)
        self.assertIn("Processing complete!", out)


if __name__ == "__main__":
    unittest.main()
