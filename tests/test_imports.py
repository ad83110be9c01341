"""
Package structure tests.
Ensures that the agent modules can be imported without syntax errors,
confirming correct package setup and path configuration.
"""

def test_agent_imports():
    """Assert that the agent modules can be imported without syntax errors."""
    try:
        import cell_telemetry.agent.main
        import cell_telemetry.agent.mqtt
        import cell_telemetry.agent.events
        import cell_telemetry.agent.transport
        import cell_telemetry.agent.models
        import cell_telemetry.agent.config_loader
        success = True
    except ImportError as e:
        success = False
        print(f"Agent Import Failed: {e}")

    assert success is True
