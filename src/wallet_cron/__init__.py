"""wallet-cron - cron-scheduled transfers and swaps for Ethereum wallets."""

__version__ = "0.1.0"
