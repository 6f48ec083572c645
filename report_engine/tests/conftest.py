"""
测试公共配置和fixture
"""
import os
import tempfile

# 日志写到临时目录，避免在工作目录下生成 logs/
os.environ.setdefault("LOG_FILE", os.path.join(tempfile.gettempdir(), "report_engine_tests.log"))
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import pytest

from report_engine.database import Database
from report_engine.services.data_sources import CallableDataSource, DataSourceRegistry
from report_engine.services.dto import ComponentNode, ReportDefinition, UserContext
from report_engine.services.execution_engine import ExecutionEngine
from report_engine.services.permission_gate import PermissionGate
from report_engine.services.report_store import ReportStore


SALES_ROWS = [
    {"region": "华东", "quarter": "Q1", "amount": 1200, "previous": 1000},
    {"region": "华南", "quarter": "Q1", "amount": 800, "previous": 900},
    {"region": "华北", "quarter": "Q1", "amount": 650, "previous": 650},
    {"region": "华东", "quarter": "Q2", "amount": 1500, "previous": 1200},
]


def sales_source(reference, parameters):
    """按 quarter 参数过滤的销售数据"""
    quarter = parameters.get("quarter")
    return [row for row in SALES_ROWS if quarter is None or row["quarter"] == quarter]


async def totals_source(reference, parameters):
    """汇总数据（异步数据源）"""
    rows = sales_source(reference, parameters)
    return [{
        "total": sum(r["amount"] for r in rows),
        "previous_total": sum(r["previous"] for r in rows),
    }]


def sample_components():
    """table / chart_bar / kpi 三个组件"""
    return [
        ComponentNode(
            id="component_table",
            type="table",
            name="销售明细",
            order_index=0,
            config={
                "data_source": "sales",
                "columns": [{"field": "region", "label": "地区"}, {"field": "amount", "label": "金额"}],
            },
        ),
        ComponentNode(
            id="component_chart",
            type="chart_bar",
            name="地区销售",
            order_index=1,
            config={
                "data_source": "sales",
                "label_field": "region",
                "series": [{"field": "amount", "label": "金额"}],
            },
        ),
        ComponentNode(
            id="component_kpi",
            type="kpi",
            name="销售总额",
            order_index=2,
            config={
                "data_source": "totals",
                "metrics": [{"label": "总额", "field": "total", "previous_field": "previous_total", "unit": "元"}],
            },
        ),
    ]


@pytest.fixture
def database(tmp_path):
    """每个测试使用独立的SQLite数据库"""
    db = Database(f"sqlite:///{tmp_path / 'reports.db'}")
    db.create_tables()
    yield db
    db.engine.dispose()


@pytest.fixture
def gate():
    return PermissionGate(admin_roles={"admin"})


@pytest.fixture
def store(database, gate):
    return ReportStore(database, gate)


@pytest.fixture
def registry():
    registry = DataSourceRegistry()
    registry.register("sales", CallableDataSource(sales_source))
    registry.register("totals", CallableDataSource(totals_source))
    return registry


@pytest.fixture
def engine(database, store, registry, gate):
    return ExecutionEngine(database, store, registry, gate, page_size=2)


@pytest.fixture
def owner():
    return UserContext(user_id="alice", role="user", tenant_id=0, username="Alice")


@pytest.fixture
def other_user():
    return UserContext(user_id="bob", role="user", tenant_id=0, username="Bob")


@pytest.fixture
def admin():
    return UserContext(user_id="root", role="admin", tenant_id=0)


@pytest.fixture
def components():
    return sample_components()


@pytest.fixture
def report(store, owner, components):
    """owner 创建的私有报表（3个组件）"""
    return store.create(
        ReportDefinition(name="季度销售报表", category="sales", type="summary", components=components),
        owner,
    )
