"""Test package for sensor_bridge."""
