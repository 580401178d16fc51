"""OHLCV candle intervals, math and aggregation."""
