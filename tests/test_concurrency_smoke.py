import os
from concurrent.futures import ThreadPoolExecutor

os.environ.setdefault("DB_BACKEND", "sqlite")

from refinery.services.refinement import RefinementController
from refinery.services.sessions import open_session


def test_concurrent_searches_share_one_session(server_db, make_agent, add_memory):
    agent_id = make_agent()
    add_memory(agent_id, "Concurrent memory one")
    add_memory(agent_id, "Concurrent memory two")
    controller = RefinementController(open_session(agent_id))

    with ThreadPoolExecutor(max_workers=2) as executor:
        results = list(
            executor.map(
                lambda query: controller.execute("search", {"query": query}),
                ["one", "two"],
            )
        )

    assert all(result["type"] == "search_results" for result in results)
    assert [result["count"] for result in results] == [1, 1]


def test_imports():
    import app.main  # noqa: F401
    import refinery.services.memory_admin  # noqa: F401
    import refinery.services.refinement  # noqa: F401
