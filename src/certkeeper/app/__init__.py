"""Engine assembly and process lifecycle.

Public API::

    from certkeeper.app.engine import Engine

    engine = Engine.from_settings(settings)
    engine.run_forever()
"""
