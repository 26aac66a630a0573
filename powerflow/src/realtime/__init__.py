"""Room subscriptions and broadcast of live device and power-flow events."""
