"""
Integration layer between Python and the trading-platform bots.

The bots (MT4, MT5, cTrader, NinjaTrader) exchange state with us through
small per-account status files:

- `status_lines` parses the bracketed `[TYPE]`, `[STATUS]`, `[CONFIG]`,
  `[TRANSLATE]` and `[TICKET]` records
- `status_reader` reads a file, picking UTF-16 or 8-bit decoding per platform
- `status_writer` rewrites a file's CONFIG line atomically so a bot picks up
  copier on/off changes
"""
