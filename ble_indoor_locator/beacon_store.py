from __future__ import annotations

import logging
import os
from typing import Dict, List, Optional, cast

import pandas as pd

from .models import BeaconIdentity, ConfiguredBeacon
from .config_manager import ConfigManager


logger = logging.getLogger(__name__)

COLUMNS = ["uuid", "major", "minor", "x", "y", "tx_power", "name"]
UUID_PATTERN = r"^[0-9A-F]{8}-[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{12}$"


class BeaconStore:
    """已配置信标的只读快照（pandas + CSV）"""

    def __init__(self, config_manager: Optional[ConfigManager] = None):
        self._df = pd.DataFrame(columns=COLUMNS)
        self._config = config_manager or ConfigManager()
        self._path: Optional[str] = None

    # ---- Utils ----
    def _normalize_df(self, df: pd.DataFrame) -> pd.DataFrame:
        if "uuid" not in df.columns:
            raise KeyError("CSV 文件缺少 'uuid' 列")
        default_tx = float(self._config.get_rssi_model_config().get("default_tx_power", -59))

        df = df.copy()
        for col in ["major", "minor", "x", "y", "tx_power"]:
            if col not in df.columns:
                df[col] = float("nan")
            df[col] = pd.to_numeric(df[col], errors="coerce")
        if "name" not in df.columns:
            df["name"] = ""

        df["uuid"] = df["uuid"].fillna("").astype(str).str.strip().str.upper()
        df["name"] = df["name"].fillna("").astype(str)
        df["major"] = df["major"].fillna(0)
        df["minor"] = df["minor"].fillna(0)
        df["tx_power"] = df["tx_power"].fillna(default_tx)

        invalid = (df["uuid"] == "") | df["x"].isna() | df["y"].isna()
        for _, row in df[invalid].iterrows():
            logger.warning("忽略无效信标：缺少UUID或坐标 %s", row.to_dict())
        df = df[~invalid]

        for uuid in df.loc[~df["uuid"].str.match(UUID_PATTERN, case=False), "uuid"].unique():
            logger.warning("UUID格式不标准，这可能影响信标识别: %s", uuid)

        df = df.astype({"major": "int64", "minor": "int64", "x": "float64", "y": "float64", "tx_power": "float64"})
        df = df[COLUMNS].drop_duplicates(subset=["uuid", "major", "minor"], keep="last")
        return df.sort_values(["uuid", "major", "minor"]).reset_index(drop=True)

    @staticmethod
    def _row_to_beacon(row: pd.Series) -> ConfiguredBeacon:
        return ConfiguredBeacon(
            identity=BeaconIdentity(uuid=str(row.at["uuid"]), major=int(row.at["major"]), minor=int(row.at["minor"])),
            x=float(row.at["x"]),
            y=float(row.at["y"]),
            tx_power=float(row.at["tx_power"]),
            name=str(row.at["name"]),
        )

    # ---- Load ----
    def load(self, beacon_file_path: Optional[str] = None) -> int:
        csv_path = beacon_file_path or self._config.get_beacon_db_path()
        self._path = csv_path
        if not os.path.exists(csv_path):
            logger.warning("信标文件不存在: %s", csv_path)
            self._df = pd.DataFrame(columns=COLUMNS)
            return 0
        df = pd.read_csv(csv_path, dtype={"uuid": str, "name": str})
        self._df = self._normalize_df(df)
        logger.info("从 %s 加载信标 %d 个", csv_path, len(self._df))
        return len(self._df)

    def reload(self) -> int:
        return self.load(self._path)

    # ---- Accessors ----
    def __len__(self) -> int:
        return len(self._df)

    def _find(self, identity: BeaconIdentity) -> pd.DataFrame:
        df = self._df
        return df[(df["uuid"] == identity.uuid) & (df["major"] == identity.major) & (df["minor"] == identity.minor)]

    def has(self, identity: BeaconIdentity) -> bool:
        return not self._find(identity).empty

    def get(self, identity: BeaconIdentity) -> Optional[ConfiguredBeacon]:
        rows = self._find(identity)
        if rows.empty:
            return None
        return self._row_to_beacon(cast(pd.Series, rows.iloc[-1]))

    def all(self) -> Dict[BeaconIdentity, ConfiguredBeacon]:
        result: Dict[BeaconIdentity, ConfiguredBeacon] = {}
        for _, row in self._df.iterrows():
            beacon = self._row_to_beacon(cast(pd.Series, row))
            result[beacon.identity] = beacon
        return result

    def snapshot(self) -> List[ConfiguredBeacon]:
        return list(self.all().values())
