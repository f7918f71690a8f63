"""Pure analytics: technical indicators, options metrics, key levels, setup classification."""
