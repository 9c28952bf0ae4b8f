from __future__ import annotations

import pytest

from personal_shopper_store.db import PersonalStoreDB
from personal_shopper_store.errors import ConstraintViolation, InvalidSetting, NotFound
from personal_shopper_store.mixing import (
    DiscoveryMixer,
    FeatureVectorDiversity,
    MixingConfig,
    SignatureDiversity,
    make_strategy,
    outlier_count,
)
from personal_shopper_store.models import (
    OUTLIER,
    PERSONALIZED,
    REASON_DIFFERENT_STYLE,
    REASON_VISUAL_APPEAL,
    Candidate,
    Interaction,
)
from personal_shopper_store.training import OutlierLog, TrainingCorpus
from tests.conftest import build_candidates


@pytest.fixture
def mixer(db: PersonalStoreDB) -> DiscoveryMixer:
    return DiscoveryMixer(TrainingCorpus(db), OutlierLog(db))


def _outlier_ids(labeled) -> list[str]:
    return [item.candidate.object_id for item in labeled if item.label == OUTLIER]


@pytest.mark.parametrize(
    ("n", "pct", "expected"),
    [
        (20, 10, 2),
        (15, 10, 2),
        (20, 5, 1),
        (10, 5, 1),
        (9, 5, 0),
        (3, 10, 0),
        (5, 10, 1),
        (0, 10, 0),
        (50, 0, 0),
    ],
)
def test_outlier_count_rounds_half_up(n: int, pct: int, expected: int) -> None:
    assert outlier_count(n, pct) == expected


@pytest.mark.parametrize("value", [7, -1, True])
def test_mixing_config_rejects_unsupported_percentages(value) -> None:
    with pytest.raises(InvalidSetting):
        MixingConfig(discovery_percentage=value)


def test_zero_percent_labels_everything_personalized(mixer: DiscoveryMixer) -> None:
    for n in range(0, 30):
        labeled = mixer.mix(build_candidates(n, odd_ones={2: "hats"}), MixingConfig(0))
        assert len(labeled) == n
        assert all(item.label == PERSONALIZED for item in labeled)
        assert all(item.discovery_reason is None for item in labeled)


def test_mix_preserves_order_and_length(mixer: DiscoveryMixer) -> None:
    candidates = build_candidates(20, odd_ones={5: "hats", 12: "bags"})

    labeled = mixer.mix(candidates, MixingConfig(10))

    assert [item.candidate for item in labeled] == candidates


def test_most_different_candidates_become_outliers(mixer: DiscoveryMixer) -> None:
    candidates = build_candidates(20, odd_ones={5: "hats", 12: "bags"})

    labeled = mixer.mix(candidates, MixingConfig(10))

    assert sorted(_outlier_ids(labeled)) == ["obj-12", "obj-5"]
    reasons = {item.candidate.object_id: item.discovery_reason for item in labeled if item.is_outlier}
    assert set(reasons.values()) == {REASON_DIFFERENT_STYLE}


def test_ties_are_broken_from_the_tail(mixer: DiscoveryMixer) -> None:
    labeled = mixer.mix(build_candidates(20), MixingConfig(10))

    assert sorted(_outlier_ids(labeled)) == ["obj-19", "obj-20"]
    assert {item.discovery_reason for item in labeled if item.is_outlier} == {REASON_VISUAL_APPEAL}


def test_best_ranked_result_stays_personalized(mixer: DiscoveryMixer) -> None:
    candidates = build_candidates(20, odd_ones={1: "hats"})

    labeled = mixer.mix(candidates, MixingConfig(10))

    assert labeled[0].label == PERSONALIZED
    assert len(_outlier_ids(labeled)) == 2


def test_mix_is_deterministic(mixer: DiscoveryMixer) -> None:
    candidates = build_candidates(40, odd_ones={3: "hats", 9: "bags", 27: "hats", 31: "belts"})

    first = mixer.mix(candidates, MixingConfig(10))
    second = mixer.mix(list(candidates), MixingConfig(10))

    assert first == second
    assert len(_outlier_ids(first)) == 4


def test_signature_distance_combines_category_and_attributes() -> None:
    strategy = SignatureDiversity()
    anchor = Candidate("a", 1, category="shoes", attributes={"color": "black", "style": "runner"})
    same = Candidate("b", 2, category="Shoes", attributes={"color": "black", "style": "runner"})
    half = Candidate("c", 3, category="shoes", attributes={"color": "black", "style": "loafer"})
    other = Candidate("d", 4, category="hats", attributes={"material": "wool"})

    assert strategy.distance(anchor, same) == 0.0
    assert strategy.distance(anchor, half) == pytest.approx(0.4 * (1 - 1 / 3))
    assert strategy.distance(anchor, other) == pytest.approx(1.0)


def test_feature_strategy_uses_vectors_and_falls_back() -> None:
    strategy = FeatureVectorDiversity()
    anchor = Candidate("a", 1, category="shoes", features=(1.0, 0.0))
    aligned = Candidate("b", 2, category="shoes", features=(2.0, 0.0))
    opposite = Candidate("c", 3, category="shoes", features=(-1.0, 0.0))
    no_vector = Candidate("d", 4, category="hats")

    assert strategy.distance(anchor, aligned) == pytest.approx(0.0)
    assert strategy.distance(anchor, opposite) == pytest.approx(1.0)
    assert strategy.distance(anchor, no_vector) == pytest.approx(0.6)


def test_feature_strategy_picks_opposite_vector(db: PersonalStoreDB) -> None:
    mixer = DiscoveryMixer(TrainingCorpus(db), OutlierLog(db), FeatureVectorDiversity())
    candidates = [
        Candidate(f"obj-{rank}", rank, category="shoes", features=(1.0, 0.1 * rank))
        for rank in range(1, 20)
    ]
    candidates.append(Candidate("obj-20", 20, category="shoes", features=(-1.0, 0.0)))
    candidates[3] = Candidate("obj-4", 4, category="shoes", features=(0.0, 1.0))

    labeled = mixer.mix(candidates, MixingConfig(10))

    assert sorted(_outlier_ids(labeled)) == ["obj-20", "obj-4"]


def test_make_strategy_by_name() -> None:
    assert isinstance(make_strategy("signature"), SignatureDiversity)
    assert isinstance(make_strategy("Feature"), FeatureVectorDiversity)
    assert isinstance(make_strategy(""), SignatureDiversity)
    with pytest.raises(InvalidSetting):
        make_strategy("random")


def _serve(db: PersonalStoreDB, mixer: DiscoveryMixer, pct: int = 10) -> tuple[int, list]:
    labeled = mixer.mix(build_candidates(20, odd_ones={5: "hats", 12: "bags"}), MixingConfig(pct))
    with db.transaction() as conn:
        search_id = DiscoveryMixer.log_serve(
            conn, query="black shoes", image_provided=False, config=MixingConfig(pct), labeled=labeled
        )
    return search_id, labeled


def test_route_sends_each_label_to_its_own_table(db: PersonalStoreDB, mixer: DiscoveryMixer) -> None:
    search_id, _ = _serve(db, mixer)

    with db.transaction() as conn:
        personal = mixer.route(conn, Interaction(search_id, "obj-1", "click"))
        discovery = mixer.route(conn, Interaction(search_id, "obj-5", "view"))

    assert personal.table == "training_interactions"
    assert discovery.table == "outlier_interactions"
    counts = db.table_counts()
    assert counts["training_interactions"] == 1
    assert counts["outlier_interactions"] == 1

    outlier = mixer.outlier_log.list()[0]
    assert outlier.shown_object_id == "obj-5"
    assert outlier.discovery_reason == REASON_DIFFERENT_STYLE
    exported = list(mixer.corpus.export())
    assert exported[0].query == "black shoes"
    assert exported[0].features["category"] == "shoes"


def test_route_rejects_label_tampering(db: PersonalStoreDB, mixer: DiscoveryMixer) -> None:
    search_id, _ = _serve(db, mixer)

    with pytest.raises(ConstraintViolation):
        with db.transaction() as conn:
            mixer.route(conn, Interaction(search_id, "obj-5", "click", label=PERSONALIZED))

    assert db.table_counts()["training_interactions"] == 0
    assert db.table_counts()["outlier_interactions"] == 0


def test_route_requires_a_served_result(db: PersonalStoreDB, mixer: DiscoveryMixer) -> None:
    search_id, _ = _serve(db, mixer)

    with pytest.raises(NotFound):
        with db.transaction() as conn:
            mixer.route(conn, Interaction(search_id, "obj-999", "click"))
    with pytest.raises(NotFound):
        with db.transaction() as conn:
            mixer.route(conn, Interaction(search_id + 1, "obj-1", "click"))
    with pytest.raises(ConstraintViolation):
        with db.transaction() as conn:
            mixer.route(conn, Interaction(search_id, "obj-1", "purchase"))
