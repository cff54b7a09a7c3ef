import unittest
from unittest import mock

from calmirror.main import build_parser, main
from calmirror.models import SyncResult


class MainTests(unittest.TestCase):
    def test_default_command_is_serve(self) -> None:
        self.assertEqual(build_parser().parse_args([]).command, "serve")

    def test_batch_command_runs_one_batch(self) -> None:
        context = mock.Mock()
        context.sync_engine.run_batch.return_value = SyncResult(
            status="success", message="ok", duration_ms=1, trigger="cli"
        )
        with mock.patch("calmirror.main.context_from_env", return_value=context), mock.patch(
            "calmirror.main.configure_logging"
        ), mock.patch("builtins.print"):
            exit_code = main(["batch"])
        self.assertEqual(exit_code, 0)
        context.sync_engine.run_batch.assert_called_once_with(trigger="cli")

    def test_error_result_sets_exit_code(self) -> None:
        context = mock.Mock()
        context.sync_engine.run_full_sweep.return_value = SyncResult(
            status="error", message="ConfigurationError: x", duration_ms=1, trigger="cli", mode="full_sweep"
        )
        with mock.patch("calmirror.main.context_from_env", return_value=context), mock.patch(
            "calmirror.main.configure_logging"
        ), mock.patch("builtins.print"):
            exit_code = main(["sweep"])
        self.assertEqual(exit_code, 1)

    def test_reset_command(self) -> None:
        context = mock.Mock()
        context.sync_engine.progress.return_value = {"cursor": None, "last_reset_date": None}
        with mock.patch("calmirror.main.context_from_env", return_value=context), mock.patch(
            "calmirror.main.configure_logging"
        ), mock.patch("builtins.print"):
            exit_code = main(["reset"])
        self.assertEqual(exit_code, 0)
        context.sync_engine.reset_progress.assert_called_once_with()


if __name__ == "__main__":
    unittest.main()
