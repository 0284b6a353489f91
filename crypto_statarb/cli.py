"""
cli.py -- command line front-end

Usage:
    python -m crypto_statarb find-pairs --symbols BTC/USDT ETH/USDT SOL/USDT
    python -m crypto_statarb backtest --correlation-file output/correlation_data_1700000000000.json
    python -m crypto_statarb backtest --symbols BTC/USDT ETH/USDT SOL/USDT --n-jobs -1
    python -m crypto_statarb backtest-pair ID/USDT HOOK/USDT --config cfg.json
    python -m crypto_statarb optimize FIL/USDT OP/USDT --sweep thresholds --n-jobs -1
    python -m crypto_statarb live --pairs ID/USDT:HOOK/USDT --auto-trade
    python -m crypto_statarb pair-history ID/USDT HOOK/USDT --months 12

API keys come from --api-key/--secret or the EXCHANGE_API_KEY /
EXCHANGE_SECRET environment variables.
"""

import argparse
import json
import logging
import os
import time
from typing import Optional

import ccxt
import pandas as pd

from .backtest_engine.batch import rank_results, recommend_pairs, run_multiple_pairs
from .backtest_engine.optimize import (
    LOOKBACK_PARAMS, THRESHOLD_PARAMS, best_params, lookback_sweep, print_return_bars,
    print_sweep, threshold_grid,
)
from .backtest_engine.runner import Backtest
from .backtest_engine.strategy import PairsStrategy
from .config import StrategyConfig, load_config
from .data_collect.collector import DataCollector, calculate_backtest_limit
from .data_collect.discovery import CorrelationDiscovery, load_correlation_data
from .live_trading import LiveTrader, build_exchange

log = logging.getLogger(__name__)

_HOUR_MS = 3_600_000


def _to_ms(date_str: str) -> int:
    ts = pd.Timestamp(date_str)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return int(ts.timestamp() * 1000)


def backtest_window(config: StrategyConfig, now_ms: Optional[int] = None) -> tuple[int, int, float]:
    """
    (since_ms, candle_limit, hours) for backtest data: the configured date
    range when both dates are set, else the last correlation_period_hours.
    """
    if config.backtest_start_date and config.backtest_end_date:
        since = _to_ms(config.backtest_start_date)
        hours = (_to_ms(config.backtest_end_date) - since) / _HOUR_MS
        if hours <= 0:
            raise ValueError(
                f"backtest_end_date {config.backtest_end_date} is not after "
                f"backtest_start_date {config.backtest_start_date}")
    else:
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        hours = config.correlation_period_hours
        since = int(now_ms - hours * _HOUR_MS)
    return since, calculate_backtest_limit(config.backtest_timeframe, hours), hours


def _parse_pair(text: str) -> tuple[str, str]:
    parts = text.split(":")
    if len(parts) != 2 or not all(parts):
        raise argparse.ArgumentTypeError(f"pair must look like SYM1:SYM2, got '{text}'")
    return parts[0], parts[1]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="crypto_statarb",
        description="Crypto pairs trading: pair discovery, backtests, live signals")
    parser.add_argument("--config", help="JSON config file (StrategyConfig fields)")
    parser.add_argument("--exchange", default="binance", help="ccxt exchange id")
    parser.add_argument("--api-key", default=os.environ.get("EXCHANGE_API_KEY"))
    parser.add_argument("--secret", default=os.environ.get("EXCHANGE_SECRET"))
    parser.add_argument("--proxy", default=os.environ.get("HTTPS_PROXY"),
                        help="HTTPS proxy URL")
    parser.add_argument("--output-dir", default="./output", help="Reports / result files")
    parser.add_argument("--data-dir", default="./data", help="Saved candle files")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("find-pairs", help="Multi-month correlation analysis")
    p.add_argument("--symbols", nargs="+", required=True)

    p = sub.add_parser("backtest", help="Backtest discovered pairs")
    p.add_argument("--correlation-file", help="Skip discovery, use a saved correlation file")
    p.add_argument("--symbols", nargs="+", help="Universe for discovery (no correlation file)")
    p.add_argument("--n-jobs", type=int, default=1, help="Parallel workers for pass 1")

    p = sub.add_parser("backtest-pair", help="Backtest one pair with a full report")
    p.add_argument("symbol1")
    p.add_argument("symbol2")

    p = sub.add_parser("optimize", help="Threshold grid or lookback sweep for one pair")
    p.add_argument("symbol1")
    p.add_argument("symbol2")
    p.add_argument("--sweep", choices=["thresholds", "lookback"], default="thresholds")
    p.add_argument("--n-jobs", type=int, default=1, help="Parallel workers")
    p.add_argument("--top", type=int, default=5, help="Rows to print")

    p = sub.add_parser("live", help="Live signal loop (orders only with --auto-trade)")
    p.add_argument("--pairs", nargs="+", type=_parse_pair, required=True,
                   help="SYM1:SYM2 ...")
    p.add_argument("--auto-trade", action="store_true")
    p.add_argument("--max-cycles", type=int)

    p = sub.add_parser("pair-history", help="Monthly correlation history of one pair")
    p.add_argument("symbol1")
    p.add_argument("symbol2")
    p.add_argument("--months", type=int, default=12)
    return parser


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------
def cmd_find_pairs(args, config, collector):
    disc = CorrelationDiscovery(collector, config=config, output_dir=args.output_dir)
    found = disc.find_pairs(args.symbols)
    print(f"\n  {len(found.pairs)} pairs written to {found.output_path}")
    return 0


def cmd_backtest(args, config, collector):
    if args.correlation_file:
        pairs = load_correlation_data(args.correlation_file, config.max_stability)
    elif args.symbols:
        disc = CorrelationDiscovery(collector, config=config, output_dir=args.output_dir)
        pairs = disc.find_pairs(args.symbols).pairs
    else:
        raise ValueError("backtest needs --correlation-file or --symbols")

    if not pairs:
        log.warning("no pairs passed the correlation filters")
        return 0

    pair_list = [p.pair for p in pairs[:config.max_pairs]]
    symbols = list(dict.fromkeys(s for pair in pair_list for s in pair))
    since, limit, hours = backtest_window(config)
    log.info(f"backtest data: {len(symbols)} symbols, {hours / 24:.0f} days, "
             f"{limit} x {config.backtest_timeframe}")

    data = collector.fetch_multiple_ohlcv(symbols, config.backtest_timeframe, limit, since)
    matrix = collector.get_price_matrix(data)
    results = run_multiple_pairs(
        config, pair_list, matrix.prices, matrix.timestamps,
        max_reports=config.max_reports, n_jobs=args.n_jobs,
        output_dir=args.output_dir)

    print(rank_results(results).head(20).to_string())
    best = recommend_pairs(results)
    if best:
        log.info("candidates for live trading:")
        for r in best:
            log.info(f"  {r.pair}: return {r.total_return:.2f}%, win rate "
                     f"{r.win_rate:.1f}%, sharpe {r.sharpe_ratio:.2f}")
    else:
        log.warning("no pair was both profitable and above 50% win rate")
    return 0


def _fetch_pair(config, collector, symbol1, symbol2):
    """Aligned (timestamps, prices1, prices2) over the backtest window."""
    since, limit, hours = backtest_window(config)
    data = collector.fetch_multiple_ohlcv(
        [symbol1, symbol2], config.backtest_timeframe, limit, since)
    if data.get(symbol1) is None or data.get(symbol2) is None:
        raise RuntimeError(f"could not fetch data for {symbol1}/{symbol2}")
    return collector.get_price_matrix(data).pair(symbol1, symbol2)


def cmd_backtest_pair(args, config, collector):
    ts, p1, p2 = _fetch_pair(config, collector, args.symbol1, args.symbol2)
    pair_config = config.for_pair(args.symbol1, args.symbol2)
    Backtest(pair_config, output_dir=args.output_dir).run(
        args.symbol1, args.symbol2, p1, p2, ts, generate_report=True)
    return 0


def cmd_optimize(args, config, collector):
    ts, p1, p2 = _fetch_pair(config, collector, args.symbol1, args.symbol2)
    pair_config = config.for_pair(args.symbol1, args.symbol2)
    title = f"{args.symbol1} / {args.symbol2} {args.sweep}"
    if args.sweep == "lookback":
        ranked = lookback_sweep(pair_config, args.symbol1, args.symbol2, p1, p2, ts,
                                n_jobs=args.n_jobs)
        print_sweep(ranked, LOOKBACK_PARAMS, n=args.top, title=title)
        print_return_bars(ranked)
    else:
        ranked = threshold_grid(pair_config, args.symbol1, args.symbol2, p1, p2, ts,
                                n_jobs=args.n_jobs)
        print_sweep(ranked, THRESHOLD_PARAMS, n=args.top, title=title)

    best = best_params(ranked)
    if not best:
        log.warning("no parameter set could be backtested")
        return 1
    print(f"  best: {best}")
    print(f"  pair_specific_params entry: "
          f"{{\"{args.symbol1}_{args.symbol2}\": {json.dumps(best)}}}\n")
    return 0


def cmd_live(args, config, collector, exchange):
    if args.auto_trade:
        config.auto_trade = True
    trader = LiveTrader(exchange, collector, PairsStrategy(config), config, args.pairs)
    try:
        trader.run(max_cycles=args.max_cycles)
    except KeyboardInterrupt:
        trader.stop()
        log.info("interrupted")
    return 0


def cmd_pair_history(args, config, collector):
    disc = CorrelationDiscovery(collector, config=config, output_dir=args.output_dir)
    hist = disc.pair_history(args.symbol1, args.symbol2, months=args.months,
                             timeframe=config.timeframe)
    print(f"\n  {args.symbol1} / {args.symbol2}")
    for row in hist["months"]:
        print(f"    {row['date']}  {row['correlation']:>7.3f}  ({row['data_points']} bars)")
    stats = hist["stats"]
    if stats is None:
        print("    no data")
        return 1
    print(f"\n    mean {stats['mean']:.3f}  std {stats['std']:.3f}  "
          f"range {stats['range']:.3f}  score {stats['stability_score']:.0f}/100")
    print(f"    suitable for pairs trading: {'yes' if stats['is_suitable'] else 'no'}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        config = (load_config(args.config) if args.config
                  else StrategyConfig().validate())
        exchange = build_exchange(args.exchange, args.api_key, args.secret,
                                  proxy=args.proxy)
        collector = DataCollector(exchange, data_dir=args.data_dir)

        if args.command == "find-pairs":
            return cmd_find_pairs(args, config, collector)
        if args.command == "backtest":
            return cmd_backtest(args, config, collector)
        if args.command == "backtest-pair":
            return cmd_backtest_pair(args, config, collector)
        if args.command == "optimize":
            return cmd_optimize(args, config, collector)
        if args.command == "live":
            return cmd_live(args, config, collector, exchange)
        if args.command == "pair-history":
            return cmd_pair_history(args, config, collector)
    except (FileNotFoundError, ValueError, RuntimeError, ccxt.BaseError) as e:
        log.error(f"{args.command} failed: {e}")
        return 1
    return 2
