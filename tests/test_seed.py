"""Tests for the HR test data generator."""

import random
from unittest.mock import MagicMock

import pytest
from faker import Faker

from mongo_automation.seed import (
    DEPARTMENTS,
    NUM_COMPANIES,
    POSITIONS,
    build_companies,
    build_employees,
    generate_dummy_data,
    generate_pdf_bytes,
    generate_png_bytes,
)


class FakeDB:
    def __init__(self):
        self.collections = {}

    def __getattr__(self, name):
        if name.startswith("__"):
            raise AttributeError(name)
        return self.collections.setdefault(name, MagicMock(name=name))


class TestBuilders:
    def test_companies(self):
        companies = build_companies(Faker())
        assert len(companies) == NUM_COMPANIES
        assert companies[0]["_id"] == "comp_001"

    def test_employees_reference_known_positions(self):
        fake = Faker()
        companies = build_companies(fake)
        employees = build_employees(fake, 12, companies)
        positions = {p[0]: p for p in POSITIONS}
        assert [e["employee_id"] for e in employees[:2]] == ["EMP0001", "EMP0002"]
        for e in employees:
            lo, hi = positions[e["position_id"]][3:5]
            assert lo <= e["salary"] <= hi
            assert e["department_id"] == positions[e["position_id"]][2]
            assert e["company_id"] in {c["_id"] for c in companies}


class TestGenerate:
    def test_counts_without_files(self):
        db = FakeDB()
        counts = generate_dummy_data(db, record_count=10, include_files=False)
        assert counts == {
            "companies": NUM_COMPANIES,
            "departments": len(DEPARTMENTS),
            "positions": len(POSITIONS),
            "employees": 10,
            "files": 0,
        }
        requests = db.employees.bulk_write.call_args[0][0]
        assert len(requests) == 10
        db.employees.create_index.assert_called()

    def test_same_seed_is_deterministic(self):
        first, second = FakeDB(), FakeDB()
        generate_dummy_data(first, record_count=3, include_files=False, seed=7)
        generate_dummy_data(second, record_count=3, include_files=False, seed=7)
        a = [r._doc for r in first.employees.bulk_write.call_args[0][0]]
        b = [r._doc for r in second.employees.bulk_write.call_args[0][0]]
        strip = lambda docs: [{k: v for k, v in d.items() if k != "created_at"} for d in docs]
        assert strip(a) == strip(b)

    def test_process_random_state_untouched(self):
        random.seed(123)
        expected = random.random()
        random.seed(123)
        generate_dummy_data(FakeDB(), record_count=3, include_files=False, seed=7)
        assert random.random() == expected

    def test_record_count_must_be_positive(self):
        with pytest.raises(ValueError):
            generate_dummy_data(FakeDB(), record_count=0)


class TestAttachments:
    def test_png(self):
        assert generate_png_bytes("Jane Doe").startswith(b"\x89PNG")

    def test_pdf(self):
        assert generate_pdf_bytes("Employment Contract", ["Employee: Jane Doe"]).startswith(b"%PDF")
