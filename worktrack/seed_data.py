"""
WorkTrack — Demo Seed Data

Property maintenance office with one actor per role and a small item/spec
catalog (civil, electrical, plumbing).

Loaded by ``flask seed-demo``; rows whose username / code already exist are
skipped, so the command can be re-run.
"""

DEMO_USERS = [
    {"username": "eo.kaya", "name": "Selin Kaya", "role": "eo", "department": "Estates"},
    {"username": "do.demir", "name": "Burak Demir", "role": "do", "department": "Estates"},
    {"username": "dept.aydin", "name": "Elif Aydın", "role": "dept_officer", "department": "Civil Works"},
    {"username": "emp.celik", "name": "Mert Çelik", "role": "employee", "department": "Civil Works"},
    {"username": "emp.sahin", "name": "Zeynep Şahin", "role": "employee", "department": "Electrical"},
    {"username": "fin.yildiz", "name": "Deniz Yıldız", "role": "finance", "department": "Finance"},
    {"username": "vendor.atlas", "name": "Atlas Yapı Ltd.", "role": "vendor", "department": None},
]


# ═════════════════════════════════════════════════════════════════════════════
# ITEM CATALOG
# ═════════════════════════════════════════════════════════════════════════════

ITEM_CATALOG = [
    {"code": "ITM-CEM-50", "description": "Portland cement, 50 kg bag",
     "category": "Civil", "subcategory": "Binders", "default_quantity": 10, "unit": "bag"},
    {"code": "ITM-SND-M3", "description": "Washed river sand",
     "category": "Civil", "subcategory": "Aggregates", "default_quantity": 2, "unit": "m3"},
    {"code": "ITM-TIL-60", "description": "Ceramic floor tile 60x60",
     "category": "Civil", "subcategory": "Finishes", "default_quantity": 40, "unit": "m2"},
    {"code": "ITM-CBL-25", "description": "Copper cable 2.5 mm², 100 m roll",
     "category": "Electrical", "subcategory": "Cabling", "default_quantity": 1, "unit": "roll"},
    {"code": "ITM-MCB-16", "description": "Miniature circuit breaker 16 A",
     "category": "Electrical", "subcategory": "Protection", "default_quantity": 6, "unit": "nos"},
    {"code": "ITM-LED-18", "description": "LED panel 18 W",
     "category": "Electrical", "subcategory": "Lighting", "default_quantity": 12, "unit": "nos"},
    {"code": "ITM-PPR-20", "description": "PPR pipe 20 mm, 4 m length",
     "category": "Plumbing", "subcategory": "Piping", "default_quantity": 8, "unit": "length"},
    {"code": "ITM-VLV-BL", "description": "Brass ball valve 1/2\"",
     "category": "Plumbing", "subcategory": "Valves", "default_quantity": 4, "unit": "nos"},
]


# ═════════════════════════════════════════════════════════════════════════════
# SPEC CATALOG
# ═════════════════════════════════════════════════════════════════════════════

SPEC_CATALOG = [
    {"code": "SPC-PLS-INT", "description": "Internal plastering, 12 mm, two coats",
     "category": "Civil", "work_chunk": "Plastering", "default_quantity": 50, "unit": "m2"},
    {"code": "SPC-PNT-EMU", "description": "Acrylic emulsion paint, two coats over primer",
     "category": "Civil", "work_chunk": "Painting", "default_quantity": 120, "unit": "m2"},
    {"code": "SPC-WTP-ROF", "description": "Roof waterproofing membrane, torch applied",
     "category": "Civil", "work_chunk": "Waterproofing", "default_quantity": 80, "unit": "m2"},
    {"code": "SPC-WIR-PNT", "description": "Point wiring incl. conduit and switch",
     "category": "Electrical", "work_chunk": "Wiring", "default_quantity": 10, "unit": "point"},
    {"code": "SPC-EAR-PIT", "description": "Earthing pit with copper plate",
     "category": "Electrical", "work_chunk": "Earthing", "default_quantity": 1, "unit": "nos"},
    {"code": "SPC-PLB-CON", "description": "Concealed plumbing per fixture",
     "category": "Plumbing", "work_chunk": "Plumbing", "default_quantity": 4, "unit": "fixture"},
]
