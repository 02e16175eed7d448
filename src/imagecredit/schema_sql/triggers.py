"""Trigger functions and trigger DDL for the initial schema."""

# ---- Trigger functions ----

FN_RAISE_IMMUTABLE = """
CREATE OR REPLACE FUNCTION raise_immutable_error()
RETURNS TRIGGER AS $$
BEGIN
    RAISE EXCEPTION 'Rows in table % are immutable', TG_TABLE_NAME;
END;
$$ LANGUAGE plpgsql;
"""

# Pending reservations may be taken over, completed or released (deleted);
# once completed a payment record never changes again.
FN_PROTECT_COMPLETED_PAYMENT = """
CREATE OR REPLACE FUNCTION protect_completed_payment()
RETURNS TRIGGER AS $$
BEGIN
    IF OLD.status = 'completed' THEN
        RAISE EXCEPTION 'Completed payment % is immutable', OLD.tx_key;
    END IF;
    IF TG_OP = 'DELETE' THEN
        RETURN OLD;
    END IF;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""

FUNCTIONS_ALL = [
    FN_RAISE_IMMUTABLE,
    FN_PROTECT_COMPLETED_PAYMENT,
]

# ---- Triggers ----

TRIGGERS_ALL = [
    "CREATE TRIGGER trg_credit_transactions_immutable "
    "BEFORE UPDATE OR DELETE ON credit_transactions "
    "FOR EACH ROW EXECUTE FUNCTION raise_immutable_error();",

    "CREATE TRIGGER trg_payment_records_completed_immutable "
    "BEFORE UPDATE OR DELETE ON payment_records "
    "FOR EACH ROW EXECUTE FUNCTION protect_completed_payment();",
]
