from sqlalchemy import create_mock_engine

from models import db


def _create_all_statements(url):
    statements = []

    def executor(sql, *multiparams, **params):
        statements.append(str(sql.compile(dialect=engine.dialect)))

    engine = create_mock_engine(url, executor)
    db.metadata.create_all(engine, checkfirst=False)
    return statements


def _outstanding_index(statements):
    return [s for s in statements if 'uq_borrowings_outstanding_bicycle' in s]


def test_outstanding_index_is_partial_on_sqlite(app):
    index = _outstanding_index(_create_all_statements('sqlite://'))
    assert len(index) == 1
    assert "WHERE status IN ('active', 'overdue')" in index[0]


def test_outstanding_index_is_partial_on_postgresql(app):
    index = _outstanding_index(_create_all_statements('postgresql://'))
    assert len(index) == 1
    assert "WHERE status IN ('active', 'overdue')" in index[0]


def test_outstanding_index_skipped_without_partial_index_support(app):
    statements = _create_all_statements('mysql://')
    assert _outstanding_index(statements) == []
    # the rest of the schema is still emitted
    assert any('CREATE TABLE borrowings' in s for s in statements)
