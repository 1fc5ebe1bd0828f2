import logging
import os
import tempfile
import unittest


class TestLoggingSetup(unittest.TestCase):
    def tearDown(self) -> None:
        from updown_trader.logging_setup import set_market_context

        set_market_context(None)
        root = logging.getLogger()
        for handler in list(root.handlers):
            handler.close()
            root.removeHandler(handler)

    def test_configure_logging_file_only_no_console(self) -> None:
        from updown_trader.logging_setup import configure_logging

        with tempfile.TemporaryDirectory() as td:
            path = os.path.join(td, "logs", "engine.log")
            configure_logging(level="debug", log_file=path, console=False)
            root = logging.getLogger()

            # No console StreamHandler writing to stdout/stderr.
            console_handlers = [
                h
                for h in root.handlers
                if isinstance(h, logging.StreamHandler)
                and not isinstance(h, logging.FileHandler)
            ]
            self.assertEqual(console_handlers, [])
            self.assertTrue(any(isinstance(h, logging.FileHandler) for h in root.handlers))
            self.assertEqual(root.level, logging.DEBUG)
            self.assertTrue(os.path.isdir(os.path.join(td, "logs")))
            self.tearDown()

    def test_no_handlers_falls_back_to_null(self) -> None:
        from updown_trader.logging_setup import configure_logging

        configure_logging(console=False)
        root = logging.getLogger()
        self.assertTrue(all(isinstance(h, logging.NullHandler) for h in root.handlers))

    def test_records_carry_current_market(self) -> None:
        from updown_trader.logging_setup import configure_logging, set_market_context

        with tempfile.TemporaryDirectory() as td:
            path = os.path.join(td, "engine.log")
            configure_logging(log_file=path, console=False)
            # Other test modules disable logging at import.
            previous = logging.root.manager.disable
            logging.disable(logging.NOTSET)
            self.addCleanup(logging.disable, previous)
            log = logging.getLogger("updown_trader.engine")
            log.info("before any market")
            set_market_context("btc-updown-15m-1700000000")
            log.info("entered")
            self.tearDown()

            with open(path, encoding="utf-8") as f:
                lines = f.read().splitlines()
            self.assertIn("[-] updown_trader.engine: before any market", lines[0])
            self.assertIn("[btc-updown-15m-1700000000] updown_trader.engine: entered", lines[1])

    def test_reconfigure_replaces_handlers(self) -> None:
        from updown_trader.logging_setup import configure_logging

        configure_logging()
        configure_logging()
        root = logging.getLogger()
        self.assertEqual(len(root.handlers), 1)
        self.assertEqual(root.level, logging.INFO)

    def test_resolve_level(self) -> None:
        from updown_trader.logging_setup import resolve_level

        self.assertEqual(resolve_level("warning"), logging.WARNING)
        self.assertEqual(resolve_level(logging.ERROR), logging.ERROR)
        with self.assertRaises(ValueError):
            resolve_level("chatty")


if __name__ == "__main__":
    unittest.main()
