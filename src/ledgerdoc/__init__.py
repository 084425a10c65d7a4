"""ledgerdoc: schema-driven documents on an Amazon QLDB ledger."""
