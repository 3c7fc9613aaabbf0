import pytest
import json
from threadscape import ProgressReporter, EngineConfig


def node(node_id, action="", date=None, areas=None, **data):
    """Build a raw document node the way the graph editor saves it."""
    payload = dict(data)
    if action:
        payload["action"] = action
    if date:
        payload["date"] = date
    if areas is not None:
        payload["areas"] = areas
    return {"id": node_id, "x": 0, "y": 0, "w": 120, "h": 80, "data": payload}


def edge(source, target, dashed=False):
    return {"s": source, "t": target, "dashed": dashed}


@pytest.fixture
def quiet_reporter():
    return ProgressReporter(quiet=True)


@pytest.fixture
def default_config():
    return EngineConfig()


@pytest.fixture
def scenario_a():
    """Exploring -> making -> exploring, one week apart."""
    return {
        "nodes": [
            node("N1", "exploring", "2024-01-01"),
            node("N2", "making", "2024-01-08"),
            node("N3", "exploring", "2024-01-15"),
        ],
        "edges": [edge("N1", "N2"), edge("N2", "N3")],
        "version": 2,
    }


@pytest.fixture
def scenario_b():
    """Two nodes pointing at each other."""
    return {
        "nodes": [node("A", "exploring"), node("B", "making")],
        "edges": [edge("A", "B"), edge("B", "A")],
    }


@pytest.fixture
def mixed_document():
    """
    Six nodes across three macro-categories with a cycle, a dangling edge,
    a self-loop, a legacy area field and a back-in-time edge.
    """
    return {
        "nodes": [
            node("N1", "Exploring", "2024-03-04", ["Speculative"], type="sketch"),
            node("N2", "making", "2024-03-06", ["Interaction Design"], type="prototype"),
            node("N3", "exploring", "2024-03-13", None, mainArea="communication"),
            node("N4", "making", "2024-03-20", ["Speculative", "Interaction"], type="prototype"),
            node("N5", "", "not-a-date", ["History"]),
            node("N6", "making", None, ["Comunicazione visiva"]),
        ],
        "edges": [
            edge("N1", "N2"),
            edge("N2", "N3"),
            edge("N3", "N1"),
            edge("N3", "N4"),
            edge("N4", "N2", dashed=True),
            edge("N2", "N1"),
            edge("N6", "N3"),
            edge("N1", "ghost"),
            edge("N5", "N5"),
        ],
    }


@pytest.fixture
def corpus_dir(tmp_path, scenario_a, scenario_b, mixed_document):
    """A numbered corpus folder with three good projects and one broken one."""
    root = tmp_path / "corpus"
    root.mkdir()
    projects = {
        "01_alpha": scenario_a,
        "02_beta": scenario_b,
        "03_gamma": mixed_document,
    }
    for name, document in projects.items():
        folder = root / name
        folder.mkdir()
        (folder / "project.json").write_text(json.dumps(document), encoding="utf-8")

    broken = root / "04_broken"
    broken.mkdir()
    (broken / "project.json").write_text("{not json", encoding="utf-8")

    # Ignored: not numbered, and numbered without a project file
    (root / "notes").mkdir()
    (root / "05_empty").mkdir()
    return root


@pytest.fixture
def make_node():
    return node


@pytest.fixture
def make_edge():
    return edge
