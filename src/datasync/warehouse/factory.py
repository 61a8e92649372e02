from datasync.sync_config import WarehouseSpec
from datasync.warehouse.base import Warehouse
from datasync.warehouse.duckdb_warehouse import DuckDbWarehouse
from datasync.warehouse.mysql_warehouse import MySqlWarehouse
from datasync.warehouse.redshift_warehouse import RedshiftWarehouse


def create_warehouse(spec: WarehouseSpec) -> Warehouse:
    if spec.dialect == "redshift":
        return RedshiftWarehouse(
            host=spec.host,
            port=spec.port,
            database=spec.database,
            user=spec.user,
            password=spec.password,
            schema_name=spec.schema_name,
            timestamp_column=spec.timestamp_column,
            iam_role=spec.iam_role,
            aws_access_key_id=spec.aws_access_key_id,
            aws_secret_access_key=spec.aws_secret_access_key,
        )
    if spec.dialect == "mysql":
        return MySqlWarehouse(
            host=spec.host,
            port=spec.port,
            database=spec.database,
            user=spec.user,
            password=spec.password,
            timestamp_column=spec.timestamp_column,
        )
    return DuckDbWarehouse(database=spec.database, timestamp_column=spec.timestamp_column)
