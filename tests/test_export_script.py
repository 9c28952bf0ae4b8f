from __future__ import annotations

import json
from pathlib import Path

from personal_shopper_store.db import PersonalStoreDB
from personal_shopper_store.models import PERSONALIZED
from personal_shopper_store.training import CorpusRecord, TrainingCorpus
from scripts.export_training_data import export_corpus


def test_export_writes_one_json_line_per_interaction(db: PersonalStoreDB, tmp_path: Path) -> None:
    corpus = TrainingCorpus(db)
    for object_id in ("obj-1", "obj-2"):
        corpus.record(
            CorpusRecord(
                query="black shoes",
                object_id=object_id,
                interaction_type="click",
                label=PERSONALIZED,
                features={"category": "shoes"},
            )
        )
    output = tmp_path / "out" / "export.jsonl"

    written = export_corpus(corpus, output)

    lines = output.read_text(encoding="utf-8").splitlines()
    assert written == 2
    rows = [json.loads(line) for line in lines]
    assert [row["chosen_object_id"] for row in rows] == ["obj-1", "obj-2"]
    assert rows[0]["features"] == {"category": "shoes"}
    assert rows[0]["weight"] == 0.5
