"""HTTP surface — status API, health endpoints, dashboard assets."""
