import os
from dotenv import load_dotenv

load_dotenv()

# Storage
TRADING_DB_PATH = os.getenv('TRADING_DB_PATH', 'trading-bot.db')
SIGNAL_EVENT_RETENTION = int(os.getenv('SIGNAL_EVENT_RETENTION', '200'))  # audit rows kept across all bots

# Signal admission
SIGNAL_COOLDOWN_SECONDS = float(os.getenv('SIGNAL_COOLDOWN_SECONDS', '3'))  # min spacing between signals per bot

# Exchange calls
EXCHANGE_TIMEOUT_SECONDS = float(os.getenv('EXCHANGE_TIMEOUT_SECONDS', '10'))  # per-call bound; timeouts count as failures
FLIP_SETTLE_MS = int(os.getenv('FLIP_SETTLE_MS', '5'))  # pause between close and open legs of a flip
BINANCE_TESTNET = os.getenv('BINANCE_TESTNET', 'false').lower() == 'true'

# Sizing fallbacks when the exchange omits symbol filters
DEFAULT_LOT_STEP = float(os.getenv('DEFAULT_LOT_STEP', '0.001'))
DEFAULT_MIN_NOTIONAL = float(os.getenv('DEFAULT_MIN_NOTIONAL', '5'))
DEFAULT_TICK_SIZE = float(os.getenv('DEFAULT_TICK_SIZE', '0.01'))
NOTIONAL_BUFFER = float(os.getenv('NOTIONAL_BUFFER', '1.0'))  # quote units added when bumping up to min notional
DEFAULT_START_BALANCE = float(os.getenv('DEFAULT_START_BALANCE', '10'))

# Reconciliation cadence
RECONCILE_INTERVAL_SECONDS = float(os.getenv('RECONCILE_INTERVAL_SECONDS', '30'))
RECONCILE_BOT_DELAY_MS = int(os.getenv('RECONCILE_BOT_DELAY_MS', '50'))  # spacing between bots to respect rate limits

# Ledger integrity: raise instead of reporting CLOSE records with no open lot
LEDGER_STRICT = os.getenv('LEDGER_STRICT', 'false').lower() == 'true'


# Exchange accounts: comma-separated "name:KEY_ENV:SECRET_ENV[:testnet]" entries.
# Credentials are read from the named env vars so secrets never live in the list itself.
def _parse_exchange_accounts(raw: str):
    accounts = {}
    for entry in raw.split(','):
        if not entry.strip():
            continue
        parts = [p.strip() for p in entry.split(':')]
        if len(parts) < 3 or not parts[0]:
            continue
        name, key_env, secret_env = parts[0], parts[1], parts[2]
        testnet = BINANCE_TESTNET
        if len(parts) > 3:
            testnet = parts[3].lower() in ('testnet', 'true', '1', 'yes')
        accounts[name] = {
            'api_key': os.getenv(key_env, ''),
            'secret': os.getenv(secret_env, ''),
            'testnet': testnet,
        }
    return accounts


EXCHANGE_ACCOUNTS = _parse_exchange_accounts(os.getenv('EXCHANGE_ACCOUNTS', ''))

# Run identity (shows up in log context)
RUN_ID = os.getenv('RUN_ID', '')
