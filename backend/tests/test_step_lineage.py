"""
Testes para instâncias de passos e linhagem de retrabalho (F1-F5)
"""
import logging
import random
import pytest
from concurrent.futures import ThreadPoolExecutor

from requirements_cascade.errors import InvalidRequest, RecordNotFound
from requirements_cascade.lineage import (
    NewStepInstance,
    StepLineageTracker,
    build_lineage_edges,
    remaining_quantity,
    remaining_weight,
    resolve_rework_origin,
)
from requirements_cascade.models import StepInstance
from requirements_cascade.records import ManufacturingOrderRecord, NewManufacturingOrder, StepInstanceRecord

from conftest import STEP_SEQUENCE


def step(id, order_id, name, number, parent=None, origin=None, **kwargs):
    return StepInstanceRecord(
        id=id, order_id=order_id, step_name=name, instance_number=number,
        parent_instance_id=parent, origin_step_id=origin, **kwargs
    )


@pytest.fixture
def tracker(store):
    return StepLineageTracker(store)


class TestF1_InstanceNumbers:
    """F1: Numeração monótona por (ordem, passo)."""

    def test_sequential_per_step(self, tracker, primary_order):
        """F1.1: Cada passo tem a sua sequência a começar em 1."""
        numbers = [
            tracker.create_instance("merchant-a", NewStepInstance(primary_order["id"], "Jhalai")).instance_number
            for _ in range(3)
        ]
        other = tracker.create_instance("merchant-a", NewStepInstance(primary_order["id"], "Polish"))
        assert numbers == [1, 2, 3]
        assert other.instance_number == 1

    def test_numbers_never_reused_after_delete(self, tracker, session_factory, primary_order):
        """F1.2: Apagar a última instância não liberta o seu número."""
        tracker.create_instance("merchant-a", NewStepInstance(primary_order["id"], "Jhalai"))
        second = tracker.create_instance("merchant-a", NewStepInstance(primary_order["id"], "Jhalai"))
        with session_factory() as session:
            session.delete(session.get(StepInstance, second.id))
            session.commit()

        third = tracker.create_instance("merchant-a", NewStepInstance(primary_order["id"], "Jhalai"))
        assert third.instance_number == 3

    def test_counter_seeded_from_existing_rows(self, tracker, session_factory, primary_order):
        """F1.3: Instâncias pré-existentes sem contador não são repetidas."""
        with session_factory() as session:
            session.add(StepInstance(
                merchant_id="merchant-a", order_id=primary_order["id"], step_name="Dhaai", instance_number=4,
            ))
            session.commit()

        created = tracker.create_instance("merchant-a", NewStepInstance(primary_order["id"], "Dhaai"))
        assert created.instance_number == 5

    def test_aborted_creation_leaves_gap_not_duplicate(self, tracker, store, primary_order):
        """F1.4: Número consumido por criação abortada não volta a ser usado."""
        assert store.next_instance_number(primary_order["id"], "QC") == 1
        created = tracker.create_instance("merchant-a", NewStepInstance(primary_order["id"], "QC"))
        assert created.instance_number == 2

    def test_unknown_order(self, tracker, scenario):
        """F1.5: Ordem inexistente é rejeitada."""
        with pytest.raises(RecordNotFound):
            tracker.create_instance("merchant-a", NewStepInstance("missing", "Jhalai"))

    def test_unknown_parent(self, tracker, primary_order):
        """F1.6: Instância-mãe inexistente é rejeitada."""
        with pytest.raises(RecordNotFound):
            tracker.create_instance(
                "merchant-a", NewStepInstance(primary_order["id"], "Dhaai", parent_instance_id="missing"),
            )

    def test_concurrent_counter_increments(self, store, primary_order):
        """F1.7: 50 incrementos concorrentes do contador dão 1..50 sem repetições."""
        with ThreadPoolExecutor(max_workers=50) as pool:
            futures = [pool.submit(store.next_instance_number, primary_order["id"], "Polish") for _ in range(50)]
            numbers = sorted(f.result() for f in futures)

        assert numbers == list(range(1, 51))

    def test_concurrent_instance_creation(self, tracker, store, primary_order):
        """F1.8: Criações concorrentes de instâncias numeram 1..N sem falhas."""
        with ThreadPoolExecutor(max_workers=40) as pool:
            futures = [
                pool.submit(tracker.create_instance, "merchant-a", NewStepInstance(primary_order["id"], "Jhalai"))
                for _ in range(40)
            ]
            created = [f.result() for f in futures]

        assert sorted(inst.instance_number for inst in created) == list(range(1, 41))
        stored = store.query_step_instances("merchant-a", [primary_order["id"]])
        assert [inst.instance_number for inst in stored] == list(range(1, 41))


class TestF2_ReworkRule:
    """F2: Regra de propagação da origem de retrabalho."""

    def test_direct_instance_defaults(self):
        """F2.1: Sem mãe nem origem: não é retrabalho."""
        assert resolve_rework_origin("Jhalai", None, None, STEP_SEQUENCE) == (None, False)

    def test_direct_instance_with_manual_origin(self):
        """F2.2: Origem explícita sem mãe é mantida."""
        assert resolve_rework_origin(
            "Jhalai", None, None, STEP_SEQUENCE, requested_origin_id="p1", requested_is_rework=True,
        ) == ("p1", True)

    def test_propagates_when_not_past_origin(self):
        """F2.3: Passo com ordem <= origem herda a origem e é retrabalho."""
        parent = step("d1", "o1", "Dhaai", 1, origin="p1")
        assert resolve_rework_origin("Dhaai", parent, "Polish", STEP_SEQUENCE) == ("p1", True)
        assert resolve_rework_origin("Polish", parent, "Polish", STEP_SEQUENCE) == ("p1", True)

    def test_stops_past_origin(self):
        """F2.4: Depois de passar a origem, a linhagem volta ao normal."""
        parent = step("p2", "o1", "Polish", 2, origin="p1", is_rework=True)
        assert resolve_rework_origin("Stone Setting", parent, "Polish", STEP_SEQUENCE) == (None, False)

    def test_parent_without_origin(self):
        """F2.5: Mãe sem origem não propaga nada."""
        parent = step("j1", "o1", "Jhalai", 1)
        assert resolve_rework_origin("Dhaai", parent, None, STEP_SEQUENCE, requested_is_rework=True) == (None, True)

    def test_missing_configuration_keeps_caller_value(self, caplog):
        """F2.6: Passo sem configuração: sem propagação, com aviso."""
        parent = step("d1", "o1", "Dhaai", 1, origin="p1")
        with caplog.at_level(logging.WARNING):
            result = resolve_rework_origin("Engraving", parent, "Polish", STEP_SEQUENCE, requested_is_rework=True)
        assert result == (None, True)
        assert "Engraving" in caplog.text

    def test_supplied_origin_ignored_with_parent(self, caplog):
        """F2.7: Com mãe, a origem fornecida pelo chamador é ignorada."""
        parent = step("j1", "o1", "Jhalai", 1)
        with caplog.at_level(logging.WARNING):
            result = resolve_rework_origin("Dhaai", parent, None, STEP_SEQUENCE, requested_origin_id="x")
        assert result == (None, False)
        assert "Ignoring supplied origin" in caplog.text


class TestF3_TrackerChain:
    """F3: Cadeia completa de retrabalho na base de dados."""

    def test_rework_chain(self, tracker, store, primary_order):
        """F3.1: Origem propaga até ao passo de origem e pára depois."""
        order_id = primary_order["id"]
        polish = tracker.create_instance("merchant-a", NewStepInstance(order_id, "Polish"))
        jhalai = tracker.create_instance(
            "merchant-a", NewStepInstance(order_id, "Jhalai", origin_step_id=polish.id, is_rework=True),
        )
        dhaai = tracker.create_instance("merchant-a", NewStepInstance(order_id, "Dhaai", parent_instance_id=jhalai.id))
        polish_again = tracker.create_instance(
            "merchant-a", NewStepInstance(order_id, "Polish", parent_instance_id=dhaai.id),
        )
        setting = tracker.create_instance(
            "merchant-a", NewStepInstance(order_id, "Stone Setting", parent_instance_id=polish_again.id),
        )

        assert (jhalai.origin_step_id, jhalai.is_rework) == (polish.id, True)
        assert (dhaai.origin_step_id, dhaai.is_rework) == (polish.id, True)
        assert (polish_again.origin_step_id, polish_again.is_rework) == (polish.id, True)
        assert polish_again.instance_number == 2
        assert (setting.origin_step_id, setting.is_rework) == (None, False)

        # Invariante: origem não nula => herdada da mãe com ordem <= origem, ou definida sem mãe
        by_id = {s.id: s for s in store.query_step_instances("merchant-a")}
        for inst in by_id.values():
            if inst.origin_step_id is None:
                continue
            if inst.parent_instance_id is None:
                continue
            parent = by_id[inst.parent_instance_id]
            origin = by_id[inst.origin_step_id]
            assert inst.origin_step_id == parent.origin_step_id
            assert STEP_SEQUENCE[inst.step_name] <= STEP_SEQUENCE[origin.step_name]

    def test_unconfigured_step_does_not_fail(self, tracker, primary_order):
        """F3.2: Passo fora da configuração cria a instância sem propagar."""
        order_id = primary_order["id"]
        polish = tracker.create_instance("merchant-a", NewStepInstance(order_id, "Polish"))
        jhalai = tracker.create_instance(
            "merchant-a", NewStepInstance(order_id, "Jhalai", origin_step_id=polish.id, is_rework=True),
        )
        engraving = tracker.create_instance(
            "merchant-a", NewStepInstance(order_id, "Engraving", parent_instance_id=jhalai.id),
        )
        assert engraving.origin_step_id is None
        assert engraving.is_rework is False
        assert engraving.instance_number == 1

    def test_parent_from_other_order_rejected(self, tracker, store, primary_order):
        """F3.3: Instância-mãe de outra ordem é rejeitada e nada é criado."""
        other = tracker.store.insert_manufacturing_order(
            "merchant-a", "MO000002", NewManufacturingOrder(quantity_required=4),
        )
        foreign = tracker.create_instance("merchant-a", NewStepInstance(primary_order["id"], "Jhalai"))
        tracker.create_instance("merchant-a", NewStepInstance(other.id, "Jhalai"))

        with pytest.raises(InvalidRequest):
            tracker.create_instance(
                "merchant-a", NewStepInstance(other.id, "Dhaai", parent_instance_id=foreign.id),
            )

        assert [s.step_name for s in store.query_step_instances("merchant-a", [other.id])] == ["Jhalai"]
        dhaai = tracker.create_instance("merchant-a", NewStepInstance(other.id, "Dhaai"))
        assert dhaai.instance_number == 1
        edges = tracker.lineage_edges("merchant-a", other.id)
        assert [(e.from_step, e.to_step) for e in edges.progression] == [("Jhalai", "Dhaai")]


class TestF4_Remaining:
    """F4: Quantidade/peso ainda disponíveis da instância-mãe."""

    def test_pure_remaining(self):
        """F4.1: Recebido menos atribuído aos filhos, nunca negativo."""
        parent = step("a", "o1", "Jhalai", 1, quantity_received=10, weight_received=5.0)
        children = [
            step("b", "o1", "Dhaai", 1, quantity_assigned=3, weight_assigned=1.5),
            step("c", "o1", "Dhaai", 2, quantity_assigned=4, weight_assigned=None),
        ]
        assert remaining_quantity(parent, children) == 3
        assert remaining_weight(parent, children) == 3.5
        assert remaining_quantity(parent, children + [step("d", "o1", "Dhaai", 3, quantity_assigned=9)]) == 0

    def test_nothing_received(self):
        """F4.2: Mãe sem receção tem zero disponível."""
        assert remaining_quantity(step("a", "o1", "Jhalai", 1), []) == 0

    def test_tracker_remaining(self, tracker, session_factory, primary_order):
        """F4.3: Cálculo através do store."""
        order_id = primary_order["id"]
        parent = tracker.create_instance("merchant-a", NewStepInstance(order_id, "Jhalai"))
        with session_factory() as session:
            row = session.get(StepInstance, parent.id)
            row.quantity_received = 8
            row.weight_received = 4.0
            session.commit()
        tracker.create_instance(
            "merchant-a",
            NewStepInstance(order_id, "Dhaai", parent_instance_id=parent.id, quantity_assigned=5, weight_assigned=2.5),
        )
        assert tracker.remaining_from_parent("merchant-a", parent.id) == {"quantity": 3.0, "weight": 1.5}


class TestF5_LineageEdges:
    """F5: Arestas de progressão e retrabalho."""

    @pytest.fixture
    def snapshot(self):
        orders = [
            ManufacturingOrderRecord("o1", "MO000001", 10),
            ManufacturingOrderRecord("o2", "MO000001-R1", 2, parent_order_id="o1", rework_source_step_id="p1"),
            ManufacturingOrderRecord("o3", "MO000001-R1-R1", 1, parent_order_id="o2", rework_source_step_id="o2-j1"),
            ManufacturingOrderRecord("o4", "MO000001-R2", 1, parent_order_id="o1", rework_source_step_id="ghost"),
            ManufacturingOrderRecord("o9", "MO000009", 5),
        ]
        instances = [
            step("j1", "o1", "Jhalai", 1),
            step("d1", "o1", "Dhaai", 1),
            step("d2", "o1", "Dhaai", 2, parent="j1"),
            step("p1", "o1", "Polish", 1),
            step("o2-j1", "o2", "Jhalai", 1, origin="p1", is_rework=True),
            step("o2-d1", "o2", "Dhaai", 1, parent="o2-j1"),
            step("x1", "o9", "Jhalai", 1),
        ]
        return orders, instances

    def test_progression_edges(self, snapshot):
        """F5.1: Ligações explícitas têm prioridade; as restantes vêm do passo anterior."""
        orders, instances = snapshot
        edges = build_lineage_edges("o1", orders, instances, STEP_SEQUENCE)
        pairs = {(e.from_instance_id, e.to_instance_id, e.explicit) for e in edges.progression}
        assert ("j1", "d1", False) in pairs
        assert ("j1", "d2", True) in pairs
        assert ("d2", "p1", False) in pairs
        assert ("o2-j1", "o2-d1", True) in pairs
        assert not any(e.order_id == "o9" for e in edges.progression)

    def test_rework_edges(self, snapshot, caplog):
        """F5.2: Arestas de retrabalho ao longo dos descendentes; origens em falta são avisadas."""
        orders, instances = snapshot
        with caplog.at_level(logging.WARNING):
            edges = build_lineage_edges("o1", orders, instances, STEP_SEQUENCE)
        assert [(e.from_instance_id, e.rework_order_number) for e in edges.rework] == [
            ("p1", "MO000001-R1"),
            ("o2-j1", "MO000001-R1-R1"),
        ]
        assert "ghost" in caplog.text

    def test_deterministic_and_unique(self, snapshot):
        """F5.3: Mesmo snapshot em qualquer ordem dá as mesmas arestas, sem duplicados."""
        orders, instances = snapshot
        expected = build_lineage_edges("o1", orders, instances, STEP_SEQUENCE).to_dict()
        rng = random.Random(7)
        for _ in range(5):
            shuffled_orders, shuffled_instances = list(orders), list(instances)
            rng.shuffle(shuffled_orders)
            rng.shuffle(shuffled_instances)
            result = build_lineage_edges("o1", shuffled_orders, shuffled_instances, STEP_SEQUENCE).to_dict()
            assert result == expected

        keys = [(e["from_instance_id"], e["to_instance_id"]) for e in expected["progression"]]
        assert len(keys) == len(set(keys))

    def test_foreign_parent_falls_back_to_inferred_edge(self, snapshot):
        """F5.5: Mãe explícita noutra ordem não deixa a instância sem aresta de entrada."""
        orders, instances = snapshot
        instances = instances + [step("x2", "o9", "Dhaai", 1, parent="j1")]
        edges = build_lineage_edges("o9", orders, instances, STEP_SEQUENCE)
        assert [(e.from_instance_id, e.to_instance_id, e.explicit) for e in edges.progression] == [
            ("x1", "x2", False),
        ]

    def test_unknown_order(self, snapshot):
        """F5.4: Ordem inexistente."""
        orders, instances = snapshot
        with pytest.raises(RecordNotFound):
            build_lineage_edges("nope", orders, instances, STEP_SEQUENCE)
