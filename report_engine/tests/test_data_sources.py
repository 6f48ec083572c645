"""
数据源测试
"""
import pytest
from sqlalchemy import create_engine, text

from report_engine.services.data_sources import (
    CallableDataSource,
    DataSourceRegistry,
    SQLDataSource,
    register_sql_sources_from_env,
)
from report_engine.services.dto import DataSet
from report_engine.services.errors import DataSourceError


@pytest.fixture
def sales_db(tmp_path):
    """包含 sales 表的临时SQLite数据库"""
    url = f"sqlite:///{tmp_path / 'erp.db'}"
    engine = create_engine(url)
    with engine.begin() as connection:
        connection.execute(text("CREATE TABLE sales (region TEXT, quarter TEXT, amount INTEGER)"))
        connection.execute(
            text("INSERT INTO sales VALUES (:region, :quarter, :amount)"),
            [
                {"region": "华东", "quarter": "Q1", "amount": 1200},
                {"region": "华南", "quarter": "Q1", "amount": 800},
                {"region": "华东", "quarter": "Q2", "amount": 1500},
            ],
        )
    engine.dispose()
    return url


@pytest.mark.asyncio
async def test_sql_source_binds_referenced_parameters(sales_db):
    registry = DataSourceRegistry()
    registry.register("erp", SQLDataSource(url=sales_db))

    data = await registry.fetch(
        {"source": "erp", "query": "SELECT region, amount FROM sales WHERE quarter = :quarter ORDER BY amount DESC"},
        {"quarter": "Q1", "unused": "x"},
    )

    assert data.columns == ["region", "amount"]
    assert data.rows == [{"region": "华东", "amount": 1200}, {"region": "华南", "amount": 800}]


@pytest.mark.asyncio
async def test_sql_source_missing_parameter(sales_db):
    source = SQLDataSource(url=sales_db)
    with pytest.raises(DataSourceError) as exc_info:
        await source.fetch({"source": "erp", "query": "SELECT * FROM sales WHERE quarter = :quarter"}, {})
    assert exc_info.value.details["missing_parameters"] == ["quarter"]


@pytest.mark.asyncio
async def test_sql_error_wrapped(sales_db):
    registry = DataSourceRegistry()
    registry.register("erp", SQLDataSource(url=sales_db))

    with pytest.raises(DataSourceError) as exc_info:
        await registry.fetch({"source": "erp", "query": "SELECT * FROM missing_table"}, {})
    assert exc_info.value.details["data_source"] == "erp"


@pytest.mark.asyncio
async def test_unregistered_source():
    with pytest.raises(DataSourceError):
        await DataSourceRegistry().fetch("nowhere", {})


@pytest.mark.asyncio
async def test_callable_source_accepts_dataset_and_rows():
    registry = DataSourceRegistry()
    registry.register("rows", CallableDataSource(lambda ref, params: [{"a": 1, "b": 2}]))
    registry.register("dataset", CallableDataSource(lambda ref, params: DataSet(rows=[], columns=["x"])))

    rows = await registry.fetch("rows", {})
    assert rows.columns == ["a", "b"]
    assert rows.row_count == 1

    empty = await registry.fetch({"source": "dataset"}, {})
    assert empty.columns == ["x"]
    assert empty.row_count == 0


def test_invalid_reference():
    with pytest.raises(DataSourceError):
        DataSourceRegistry.normalize_reference({"query": "SELECT 1"})


def test_register_sql_sources_from_env(sales_db):
    registry = DataSourceRegistry()

    names = register_sql_sources_from_env(registry, {
        "REPORT_DATASOURCE_ERP": sales_db,
        "REPORT_DATASOURCE_EMPTY": "",
        "OTHER_SETTING": "x",
    })

    assert names == ["erp"]
    assert registry.names() == ["erp"]
    assert "erp.db" in registry.get("erp").describe()
