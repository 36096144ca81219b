SCHEMA_SQL = r"""
-- Qualities (categories of goods; soft-deleted via is_active)
CREATE TABLE IF NOT EXISTS qualities (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL,
  is_active INTEGER NOT NULL DEFAULT 1,
  note TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_qualities_name ON qualities(name COLLATE NOCASE);

-- Articles (sold by the piece; weight per piece converts pieces to kg)
CREATE TABLE IF NOT EXISTS articles (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL,
  grams_per_piece REAL NOT NULL CHECK (grams_per_piece > 0),
  is_active INTEGER NOT NULL DEFAULT 1,
  last_sold_at TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_articles_name ON articles(name COLLATE NOCASE);

-- Deliveries (one incoming weighed lot)
CREATE TABLE IF NOT EXISTS deliveries (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  display_id TEXT NOT NULL UNIQUE,       -- human-assigned, e.g. "12" / "12A"
  date TEXT NOT NULL,                    -- ISO date
  quality_id INTEGER NOT NULL,
  kg_in REAL NOT NULL CHECK (kg_in > 0),
  unit_cost_per_kg REAL NOT NULL CHECK (unit_cost_per_kg >= 0),
  invoice_number TEXT,                   -- empty/NULL = not invoiced
  supplier_name TEXT,
  note TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  FOREIGN KEY (quality_id) REFERENCES qualities(id)
);

-- Sale headers
CREATE TABLE IF NOT EXISTS sales (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  sale_number TEXT NOT NULL UNIQUE,
  date_time TEXT NOT NULL,               -- ISO datetime
  payment_method TEXT NOT NULL DEFAULT 'cash',   -- cash / card / other
  note TEXT,
  status TEXT NOT NULL DEFAULT 'draft',  -- draft / finalized
  finalized_at TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

-- Sale lines (owned by the sale; cost values frozen at creation)
CREATE TABLE IF NOT EXISTS sale_lines (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  sale_id INTEGER NOT NULL,
  position INTEGER NOT NULL DEFAULT 0,
  article_id INTEGER NOT NULL,
  quantity INTEGER NOT NULL CHECK (quantity > 0),
  unit_price_eur REAL NOT NULL CHECK (unit_price_eur >= 0),
  real_delivery_id INTEGER NOT NULL,
  accounting_delivery_id INTEGER,
  kg_per_piece_snapshot REAL NOT NULL,
  unit_cost_per_kg_real_snapshot REAL NOT NULL,
  unit_cost_per_kg_acc_snapshot REAL,
  created_at TEXT NOT NULL,
  FOREIGN KEY (sale_id) REFERENCES sales(id) ON DELETE CASCADE,
  FOREIGN KEY (article_id) REFERENCES articles(id),
  FOREIGN KEY (real_delivery_id) REFERENCES deliveries(id),
  FOREIGN KEY (accounting_delivery_id) REFERENCES deliveries(id)
);
CREATE INDEX IF NOT EXISTS ix_sale_lines_sale ON sale_lines(sale_id);
CREATE INDEX IF NOT EXISTS ix_sale_lines_real ON sale_lines(real_delivery_id);
CREATE INDEX IF NOT EXISTS ix_sale_lines_acc ON sale_lines(accounting_delivery_id);

-- Snapshots are write-once
CREATE TRIGGER IF NOT EXISTS trg_sale_lines_snapshots_immutable
BEFORE UPDATE OF kg_per_piece_snapshot, unit_cost_per_kg_real_snapshot, unit_cost_per_kg_acc_snapshot
ON sale_lines
BEGIN
  SELECT RAISE(ABORT, 'sale line snapshots are immutable');
END;
"""
