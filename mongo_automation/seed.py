"""
HR test data generator.

Seeds companies, departments, positions and employees into the cluster's
database, optionally with GridFS attachments (a PNG badge photo and a PDF
contract per employee). Documents use fixed ``_id`` values and are upserted,
so seeding the same cluster twice leaves one copy of each record.
"""

import io
import logging
import random
from datetime import datetime
from typing import Dict, List, Optional

import gridfs
from faker import Faker
from fpdf import FPDF
from PIL import Image, ImageDraw
from pymongo import ASCENDING, ReplaceOne
from tqdm import tqdm

logger = logging.getLogger(__name__)

DEPARTMENTS = [
    ("dept_001", "Human Resources"),
    ("dept_002", "Information Technology"),
    ("dept_003", "Finance"),
    ("dept_004", "Marketing"),
    ("dept_005", "Operations"),
]

POSITIONS = [
    ("pos_001", "Software Engineer", "dept_002", 8_000_000, 15_000_000),
    ("pos_002", "HR Manager", "dept_001", 12_000_000, 20_000_000),
    ("pos_003", "Financial Analyst", "dept_003", 7_000_000, 12_000_000),
    ("pos_004", "Marketing Specialist", "dept_004", 6_000_000, 10_000_000),
    ("pos_005", "Operations Manager", "dept_005", 10_000_000, 18_000_000),
]

NUM_COMPANIES = 5


def ensure_indexes(db):
    db.employees.create_index([("employee_id", ASCENDING)], unique=True)
    db.employees.create_index([("company_id", ASCENDING), ("department_id", ASCENDING)])
    db.employees.create_index([("email", ASCENDING)])
    db.positions.create_index([("department_id", ASCENDING)])


def generate_png_bytes(text: str, width: int = 320, height: int = 240, rng: Optional[random.Random] = None) -> bytes:
    rng = rng or random.Random()
    image = Image.new("RGB", (width, height), color=(rng.randint(0, 255), rng.randint(0, 255), rng.randint(0, 255)))
    draw = ImageDraw.Draw(image)
    draw.text((10, 10), text, fill=(255, 255, 255))
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


def generate_pdf_bytes(title: str, lines: List[str]) -> bytes:
    pdf = FPDF()
    pdf.add_page()
    pdf.set_font("helvetica", "B", 16)
    pdf.cell(0, 10, title)
    pdf.ln(12)
    pdf.set_font("helvetica", size=12)
    for line in lines:
        pdf.multi_cell(0, 8, line)
    return bytes(pdf.output())


def build_companies(fake: Faker, rng: Optional[random.Random] = None) -> List[Dict]:
    rng = rng or random.Random()
    companies = []
    for i in range(NUM_COMPANIES):
        companies.append({
            "_id": f"comp_{i + 1:03d}",
            "name": f"PT. HRM Labs Company {i + 1}",
            "address": fake.address(),
            "phone": fake.phone_number(),
            "email": f"info@company{i + 1}.com",
            "established": datetime(2010 + i, rng.randint(1, 12), rng.randint(1, 28)),
            "employees_count": rng.randint(50, 500),
        })
    return companies


def build_employees(fake: Faker, count: int, companies: List[Dict], rng: Optional[random.Random] = None) -> List[Dict]:
    rng = rng or random.Random()
    employees = []
    for i in range(count):
        position = rng.choice(POSITIONS)
        employees.append({
            "_id": f"emp_{i + 1:03d}",
            "employee_id": f"EMP{i + 1:04d}",
            "first_name": fake.first_name(),
            "last_name": fake.last_name(),
            "email": f"employee{i + 1}@company.com",
            "phone": fake.phone_number(),
            "hire_date": datetime.combine(fake.date_between(start_date="-6y", end_date="-30d"), datetime.min.time()),
            "position_id": position[0],
            "department_id": position[2],
            "company_id": rng.choice(companies)["_id"],
            "salary": rng.randint(position[3], position[4]),
            "status": rng.choice(["active", "active", "active", "inactive"]),
            "address": fake.address(),
            "birth_date": datetime.combine(fake.date_of_birth(minimum_age=22, maximum_age=60), datetime.min.time()),
            "created_at": datetime.utcnow(),
        })
    return employees


def _upsert_all(collection, docs: List[Dict]) -> int:
    if not docs:
        return 0
    collection.bulk_write([ReplaceOne({"_id": d["_id"]}, d, upsert=True) for d in docs], ordered=False)
    return len(docs)


def _attach_files(db, employees: List[Dict], progress: bool, rng: random.Random) -> int:
    fs = gridfs.GridFS(db)
    stored = 0
    for emp in tqdm(employees, desc="Attachments", disable=not progress):
        label = emp["employee_id"]
        for existing in db.fs.files.find({"metadata.employee_id": emp["_id"]}, {"_id": 1}):
            fs.delete(existing["_id"])
        photo_id = fs.put(
            generate_png_bytes(f"{emp['first_name']} {emp['last_name']}", rng=rng),
            filename=f"{label}.png",
            contentType="image/png",
            metadata={"employee_id": emp["_id"], "kind": "photo"},
        )
        contract_id = fs.put(
            generate_pdf_bytes("Employment Contract", [
                f"Employee: {emp['first_name']} {emp['last_name']} ({label})",
                f"Company: {emp['company_id']}",
                f"Generated: {datetime.utcnow().isoformat()}",
            ]),
            filename=f"{label}.pdf",
            contentType="application/pdf",
            metadata={"employee_id": emp["_id"], "kind": "contract"},
        )
        db.documents.replace_one(
            {"_id": emp["_id"]},
            {"_id": emp["_id"], "employee_id": emp["_id"], "files": [photo_id, contract_id], "created_at": datetime.utcnow()},
            upsert=True,
        )
        stored += 2
    return stored


def generate_dummy_data(db, record_count: int = 100, include_files: bool = True, seed: int = 42, progress: bool = False) -> Dict[str, int]:
    if record_count < 1:
        raise ValueError("record_count must be at least 1")
    rng = random.Random(seed)
    fake = Faker(["id_ID", "en_US"])
    fake.seed_instance(seed)

    ensure_indexes(db)

    companies = build_companies(fake, rng)
    departments = [{"_id": d_id, "name": name, "description": f"{name} Department"} for d_id, name in DEPARTMENTS]
    positions = [
        {"_id": p_id, "title": title, "department_id": dept, "salary_min": lo, "salary_max": hi}
        for p_id, title, dept, lo, hi in POSITIONS
    ]
    employees = build_employees(fake, record_count, companies, rng)

    counts = {}
    logger.info("Inserting companies...")
    counts["companies"] = _upsert_all(db.companies, companies)
    logger.info("Inserting departments...")
    counts["departments"] = _upsert_all(db.departments, departments)
    logger.info("Inserting positions...")
    counts["positions"] = _upsert_all(db.positions, positions)
    logger.info("Inserting employees...")
    counts["employees"] = _upsert_all(db.employees, employees)
    counts["files"] = _attach_files(db, employees, progress, rng) if include_files else 0

    logger.info("Data insertion completed! Inserted %d employees.", counts["employees"])
    return counts
