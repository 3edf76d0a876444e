"""Query segmentation engine.

Splits a query into dependency-ordered segments, runs them stage by stage
against a model client, and synthesizes the results.

Main components:
- segmenter.py: heuristic query decomposition
- graph_builder.py: staged execution plans
- runner.py: single segment execution
- coordinator.py: stage-by-stage execution and escalation
- synthesizer.py: result ranking and summary
- service.py: public segment/coordinate/search entry points
- pipeline.py: LangGraph segmented search pipeline
"""

# Runtime objects are not re-exported here; libs.caching imports the schemas
# package and would otherwise import the service back during initialization.
__all__ = []
