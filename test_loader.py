#!/usr/bin/env python3
"""
Tests for document loading and area normalization.
"""

import json

import pytest

from threadscape import (
    AreaNormalizer,
    AreaSource,
    DocumentError,
    EXPLORING,
    MAKING,
    OTHER,
    area_key,
    canonical_area_name,
    collect_area_sources,
    discover_projects,
    load_document,
    load_project_file,
    normalize_action,
    parse_date,
)
from datetime import date


# ============================================================================
# AREA NORMALIZATION
# ============================================================================


class TestCanonicalAreaName:
    def test_renamed_labels(self):
        assert canonical_area_name("speculative") == "Speculative Design"
        assert canonical_area_name("COMMUNICATION") == "Communication Design"
        assert canonical_area_name("Interaction design") == "Interaction Design"

    def test_whitespace_collapsed(self):
        assert canonical_area_name("  speculative \t  design ") == "Speculative Design"
        assert canonical_area_name("Bio   Art") == "Bio Art"

    def test_other_labels_keep_casing(self):
        assert canonical_area_name("hci") == "hci"
        assert canonical_area_name("Machine Learning") == "Machine Learning"

    def test_empty(self):
        assert canonical_area_name(None) == ""
        assert canonical_area_name("   ") == ""

    def test_area_key(self):
        assert area_key("Bio-Art") == "bio art"
        assert area_key("  Bio  Art!! ") == "bio art"


class TestAreaNormalizer:
    def test_speculative_variants_merge(self):
        # Scenario D
        assert AreaNormalizer.normalize(["Speculative", "speculative design"]) == [
            "Speculative Design"
        ]

    def test_first_occurrence_wins(self):
        result = AreaNormalizer.normalize(["bio-art", "Bio Art", "BIO ART"])
        assert result == ["bio-art"]

    def test_legacy_fields_appended(self):
        result = AreaNormalizer.normalize(["History"], ["communication", ["HCI", "history"]])
        assert result == ["History", "Communication Design", "HCI"]

    def test_single_string_and_none(self):
        assert AreaNormalizer.normalize("interaction", [None, ""]) == ["Interaction Design"]
        assert AreaNormalizer.normalize(None) == []

    def test_non_string_items_tolerated(self):
        assert AreaNormalizer.normalize([None, 42, "  "]) == ["42"]

    @pytest.mark.parametrize(
        "areas",
        [
            ["Speculative", "speculative design", "HCI"],
            ["  bio   art", "Bio-Art", "communication"],
            ["Interaction", "Interaction Design", "interaction  design"],
            [],
        ],
    )
    def test_idempotent(self, areas):
        once = AreaNormalizer.normalize(areas)
        assert AreaNormalizer.normalize(once) == once

    def test_normalize_sources_keeps_order(self):
        sources = [
            AreaSource("areas", ["HCI"]),
            AreaSource("mainAreas", ["Speculation"]),
            AreaSource("mainArea", "interaction"),
        ]
        assert AreaNormalizer.normalize_sources(sources) == [
            "HCI",
            "Speculation",
            "Interaction Design",
        ]
        assert not sources[0].is_legacy
        assert sources[1].is_legacy

    def test_normalize_sources_empty(self):
        assert AreaNormalizer.normalize_sources([]) == []


class TestMacroCategory:
    def test_single_bucket(self):
        assert AreaNormalizer.macro_category(["Speculative Design"]) == "speculative"
        assert AreaNormalizer.macro_category(["Communication Design"]) == "communication"
        assert AreaNormalizer.macro_category(["Interaction Design"]) == "interaction"

    def test_italian_stems(self):
        assert AreaNormalizer.macro_category(["Comunicazione visiva"]) == "communication"
        assert AreaNormalizer.macro_category(["Design speculativo"]) == "speculative"

    def test_substring_not_token(self):
        # "international" contains "inter"
        assert AreaNormalizer.macro_category(["International politics"]) == "interaction"

    def test_tie_is_mixed(self):
        assert AreaNormalizer.macro_category(["Speculative", "Interaction"]) == "mixed"

    def test_strict_winner(self):
        areas = ["Speculative Design", "Speculative fiction", "Interaction Design"]
        assert AreaNormalizer.macro_category(areas) == "speculative"

    def test_unknown(self):
        assert AreaNormalizer.macro_category(["History"]) == "unknown"
        assert AreaNormalizer.macro_category([]) == "unknown"
        assert AreaNormalizer.macro_category(None) == "unknown"


# ============================================================================
# FIELD PARSING
# ============================================================================


class TestFieldParsing:
    def test_parse_date_valid(self):
        assert parse_date("2024-01-08") == date(2024, 1, 8)

    @pytest.mark.parametrize(
        "value", [None, "", "2024-02-30", "2024/01/08", "08-01-2024", "2024-1-8", 20240108]
    )
    def test_parse_date_invalid(self, value):
        assert parse_date(value) is None

    def test_normalize_action(self):
        assert normalize_action(" Exploring ") == EXPLORING
        assert normalize_action("MAKING") == MAKING
        assert normalize_action("Designing") == OTHER
        assert normalize_action(None) == OTHER

    def test_collect_area_sources_order(self):
        data = {"mainarea": "c", "areas": ["a"], "mainArea": "b", "mainAreas": None}
        fields = [s.field for s in collect_area_sources(data)]
        assert fields == ["areas", "mainArea", "mainarea"]


# ============================================================================
# DOCUMENT LOADER
# ============================================================================


class TestLoadDocument:
    def test_nodes_in_document_order(self, mixed_document):
        graph = load_document(mixed_document, "03_gamma")
        assert graph.name == "03_gamma"
        assert [n.id for n in graph.nodes] == ["N1", "N2", "N3", "N4", "N5", "N6"]

    def test_node_fields(self, mixed_document):
        graph = load_document(mixed_document)
        n1 = graph.node("N1")
        assert n1.action == EXPLORING
        assert n1.date == date(2024, 3, 4)
        assert n1.areas == ("Speculative Design",)
        assert n1.macro_category == "speculative"
        assert n1.type == "sketch"

        n3 = graph.node("N3")
        assert n3.areas == ("Communication Design",)
        assert n3.macro_category == "communication"

        n5 = graph.node("N5")
        assert n5.action == OTHER
        assert n5.date is None

    def test_invalid_edges_dropped(self, mixed_document):
        graph = load_document(mixed_document)
        assert len(graph.edges) == 7
        assert all(e.target != "ghost" for e in graph.edges)
        assert all(e.source != e.target for e in graph.edges)
        assert any(e.dashed for e in graph.edges)

    def test_data_quality(self, mixed_document):
        quality = load_document(mixed_document).quality
        assert quality.missing_dates == 1
        assert quality.invalid_dates == 1
        assert quality.missing_actions == 1
        assert quality.action_case_mismatches == 1
        assert quality.legacy_area_fields == 1
        assert quality.dangling_edges == 1
        assert quality.self_loop_edges == 1
        assert quality.duplicate_edges == 0
        assert quality.missing_node_ids == 0
        assert quality.duplicate_node_ids == 0

    def test_null_legacy_field_not_counted(self, make_node):
        document = {
            "nodes": [
                make_node("A", "exploring", areas=["HCI"], mainArea=None, mainarea=None),
                make_node("B", "making", mainAreas="interaction"),
            ],
            "edges": [],
        }
        graph = load_document(document)
        assert graph.quality.legacy_area_fields == 1
        assert graph.node("A").areas == ("HCI",)
        assert graph.node("B").areas == ("Interaction Design",)

    def test_node_without_fields_retained(self):
        graph = load_document({"nodes": [{}, None, {"id": "A"}], "edges": []})
        assert len(graph.nodes) == 3
        assert graph.nodes[0].id == ""
        assert graph.nodes[0].areas == ()
        assert graph.quality.missing_node_ids == 2

    def test_empty_id_nodes_not_referenceable(self):
        graph = load_document(
            {"nodes": [{"id": ""}, {"id": "A"}], "edges": [{"s": "", "t": "A"}]}
        )
        assert graph.edges == ()
        assert graph.quality.dangling_edges == 1

    def test_duplicate_ids(self, make_node, make_edge):
        document = {
            "nodes": [
                make_node("A", "exploring"),
                make_node("A", "making"),
                make_node("B", "making"),
            ],
            "edges": [make_edge("A", "B"), make_edge("A", "B"), make_edge("A", "B", True)],
        }
        graph = load_document(document)
        assert len(graph.nodes) == 3
        assert graph.quality.duplicate_node_ids == 1
        assert graph.quality.duplicate_edges == 1
        assert len(graph.edges) == 3
        # Lookups resolve to the last occurrence
        assert graph.node("A").action == MAKING

    def test_ids_coerced_to_strings(self):
        graph = load_document(
            {"nodes": [{"id": 1}, {"id": 2}], "edges": [{"s": 1, "t": 2}]}
        )
        assert [n.id for n in graph.nodes] == ["1", "2"]
        assert graph.edges[0].source == "1"

    def test_extra_top_level_fields_ignored(self, scenario_a):
        scenario_a["title"] = "whatever"
        graph = load_document(scenario_a)
        assert len(graph.nodes) == 3

    @pytest.mark.parametrize(
        "document",
        [
            [],
            "nodes",
            {"nodes": {}, "edges": []},
            {"nodes": [], "edges": None},
            {"nodes": []},
            {"edges": []},
        ],
    )
    def test_structurally_impossible_documents(self, document):
        with pytest.raises(DocumentError):
            load_document(document, "bad")


class TestLoadProjectFile:
    def test_name_from_folder(self, tmp_path, scenario_a):
        folder = tmp_path / "07_demo"
        folder.mkdir()
        path = folder / "project.json"
        path.write_text(json.dumps(scenario_a), encoding="utf-8")
        graph = load_project_file(str(path))
        assert graph.name == "07_demo"
        assert len(graph.edges) == 2

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{nope", encoding="utf-8")
        with pytest.raises(DocumentError, match="JSON parse failed"):
            load_project_file(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(DocumentError):
            load_project_file(str(tmp_path / "missing.json"), "missing")


class TestDiscoverProjects:
    def test_numbered_folders_in_order(self, corpus_dir):
        sources = discover_projects(str(corpus_dir))
        assert [s.name for s in sources] == ["01_alpha", "02_beta", "03_gamma", "04_broken"]
        assert all(s.path.endswith("project.json") for s in sources)

    def test_single_file(self, tmp_path, scenario_b):
        path = tmp_path / "solo.json"
        path.write_text(json.dumps(scenario_b), encoding="utf-8")
        sources = discover_projects(str(path))
        assert len(sources) == 1
        assert sources[0].name == "solo"

    def test_empty_directory(self, tmp_path):
        assert discover_projects(str(tmp_path)) == []
