import contextlib
import contextvars
import logging
import os
import sys

# Each asyncio task gets its own copy, so concurrent signals keep separate ids
_CURRENT_BOT_ID = contextvars.ContextVar("signal_trader_bot_id", default=None)


def current_bot_id():
    return _CURRENT_BOT_ID.get()


@contextlib.contextmanager
def bot_log_context(bot_id):
    """Tag every record emitted inside the block by the current task with `bot_id`."""
    token = _CURRENT_BOT_ID.set(bot_id)
    try:
        yield
    finally:
        _CURRENT_BOT_ID.reset(token)


class RunContextFilter(logging.Filter):
    """Stamps records with the process run id and the bot being handled."""

    def __init__(self):
        super().__init__()
        self.run_id = os.getenv("RUN_ID")

    def filter(self, record):
        bot_id = _CURRENT_BOT_ID.get()
        record.bot_id = "-" if bot_id is None else bot_id
        record.run_id = self.run_id or "-"
        return True


_RUN_CONTEXT_FILTER = RunContextFilter()


def set_logging_context(run_id=None):
    """Set the run id carried by every record of this process."""
    if run_id is not None:
        _RUN_CONTEXT_FILTER.run_id = run_id


def _is_test_run() -> bool:
    return (
        "PYTEST_RUNNING" in os.environ
        or "PYTEST_CURRENT_TEST" in os.environ
        or "pytest" in sys.modules
    )


def setup_logging():
    """
    Configures the logging system and returns the user-facing actions logger.
    - bot.log: one line per signal, order and reconciliation outcome (signal_actions logger)
    - console.log: technical DEBUG log tagged with bot and run ids
    - Terminal: INFO level
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    if root.hasHandlers():
        root.handlers.clear()

    test_mode = _is_test_run()
    log_dir = "logs/test" if test_mode else "."
    os.makedirs(log_dir, exist_ok=True)

    tagged = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - bot=%(bot_id)s run=%(run_id)s - %(message)s'
    )

    debug_file = logging.FileHandler(
        os.path.join(log_dir, "console_test.log" if test_mode else "console.log"), mode='w'
    )
    debug_file.setLevel(logging.DEBUG)
    terminal = logging.StreamHandler(sys.stdout)
    terminal.setLevel(logging.DEBUG if test_mode else logging.INFO)
    for handler in (debug_file, terminal):
        handler.setFormatter(tagged)
        handler.addFilter(_RUN_CONTEXT_FILTER)
        root.addHandler(handler)

    actions_logger = logging.getLogger('signal_actions')
    actions_logger.setLevel(logging.INFO)
    actions_logger.propagate = False
    for handler in list(actions_logger.handlers):
        handler.close()
    actions_logger.handlers.clear()

    # Appended across restarts so the signal history survives
    actions_file = logging.FileHandler(
        os.path.join(log_dir, "bot_test.log" if test_mode else "bot.log"), mode='a'
    )
    actions_file.setLevel(logging.INFO)
    actions_file.setFormatter(logging.Formatter('%(asctime)s - bot=%(bot_id)s - %(message)s'))
    actions_file.addFilter(_RUN_CONTEXT_FILTER)
    actions_logger.addHandler(actions_file)

    logging.getLogger('ccxt').setLevel(logging.WARNING)

    logging.info("Logging initialized")
    return actions_logger
