"""Scaffold templates for `strata init`.

A small shop analytics project: raw orders and payments land in the `raw`
schema, staging models clean them, an intermediate model joins them, and a
mart aggregates per customer.
"""

from __future__ import annotations


# ---------------------------------------------------------------------------
# project.yml / sources.yml
# ---------------------------------------------------------------------------

PROJECT_YML_TEMPLATE = """\
name: {name}
description: "Shop analytics, a strata sample project"

database:
  path: warehouse.duckdb

target:
  schema: analytics
  threads: 4

quality:
  sample_size: 5
  fail_on_stale_error: true

environments:
  dev:
    target:
      schema: dev_analytics
  prod:
    database:
      path: ${{STRATA_PROD_DB}}
    target:
      schema: analytics
"""

SOURCES_YML_TEMPLATE = """\
sources:
  - name: shop
    schema: raw
    description: "Operational exports loaded by the ingestion job"
    loaded_at_column: _loaded_at
    freshness:
      warn_after: 12h
      error_after: 24h
    tables:
      - name: orders
        description: "One row per order"
        columns:
          - name: order_id
            description: "Primary key"
      - name: payments
        description: "Payments against orders, amounts in cents"
        freshness:
          warn_after: 24h
          error_after: 72h
"""

# ---------------------------------------------------------------------------
# Macros
# ---------------------------------------------------------------------------

SAMPLE_MACRO_SQL = """\
-- macro: cents_to_dollars(column, scale=2)
ROUND({{ column }} / 100.0, {{ scale }})
"""

# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

SAMPLE_STG_ORDERS_SQL = """\
-- config: materialized=view
-- description: Orders with normalized status
-- col: order_id: Order primary key
-- assert: unique(order_id)
-- assert: not_null(order_id)
-- assert: not_null(customer_id)
-- assert(warn): accepted_values(status, ['placed', 'shipped', 'returned'])

SELECT
    order_id,
    customer_id,
    LOWER(status) AS status,
    ordered_at
FROM {{ source('shop', 'orders') }}
"""

SAMPLE_STG_PAYMENTS_SQL = """\
-- config: materialized=view
-- description: Payments converted to dollars
-- assert: not_null(payment_id)
-- assert: relationships(order_id, ref('stg_orders'))

SELECT
    payment_id,
    order_id,
    {{ cents_to_dollars(amount_cents) }} AS amount,
    paid_at
FROM {{ source('shop', 'payments') }}
"""

SAMPLE_INT_ORDER_PAYMENTS_SQL = """\
-- config: materialized=incremental, unique_key=order_id
-- incremental_filter: paid_at > (SELECT COALESCE(MAX(paid_at), TIMESTAMP '1970-01-01') FROM {{ this }})
-- description: Orders with their payment totals
-- assert: unique(order_id)
-- assert: total >= 0

SELECT
    o.order_id,
    o.customer_id,
    o.status,
    COALESCE(SUM(p.amount), 0) AS total,
    MAX(p.paid_at) AS paid_at
FROM {{ ref('stg_orders') }} o
LEFT JOIN {{ ref('stg_payments') }} p ON p.order_id = o.order_id
GROUP BY 1, 2, 3
"""

SAMPLE_CUSTOMER_REVENUE_SQL = """\
-- config: materialized=table
-- description: Lifetime revenue per customer
-- assert: row_count > 0
-- assert: unique(customer_id)

SELECT
    customer_id,
    COUNT(*) AS orders,
    SUM(total) AS revenue
FROM {{ ref('int_order_payments') }}
WHERE status <> 'returned'
GROUP BY customer_id
"""

GITIGNORE_TEMPLATE = "warehouse.duckdb\nwarehouse.duckdb.wal\ntarget/\n__pycache__/\n"
