"""HTTP boundary and tool routing for the bridge."""
