"""デコーダ・エンコーダ・ディスパッチャが共有するデータモデル。"""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Callable, Protocol, Sequence, Union


class Gauge(float):
    """瞬間値。リトルエンディアンの double で送られる。"""

    type_name = "gauge"


class Derive(int):
    """符号付きのレートカウンタ。"""

    type_name = "derive"


class Counter(int):
    """折り返しを許す符号なしカウンタ。"""

    type_name = "counter"


class Absolute(int):
    """読むたびにリセットされる符号なしカウンタ。"""

    type_name = "absolute"


Value = Union[Gauge, Derive, Counter, Absolute]


@dataclass(frozen=True)
class Identifier:
    host: str
    plugin: str
    plugin_instance: str = ""
    type: str = ""
    type_instance: str = ""

    def __str__(self) -> str:
        plugin = self.plugin
        if self.plugin_instance:
            plugin = f"{plugin}-{self.plugin_instance}"
        type_ = self.type
        if self.type_instance:
            type_ = f"{type_}-{self.type_instance}"
        return f"{self.host}/{plugin}/{type_}"


@dataclass
class ValueList:
    """ある時刻における 1 つの識別子の値の組。"""

    identifier: Identifier
    time: datetime.datetime | None
    interval: datetime.timedelta
    values: Sequence[Value]
    ds_names: Sequence[str] = field(default_factory=tuple)

    def ds_name(self, index: int) -> str:
        if index < len(self.ds_names):
            return self.ds_names[index]
        if len(self.values) == 1:
            return "value"
        return str(index)


class Dispatcher(Protocol):
    """デコード済みの value list を受け取る。例外を投げるとその 1 件の配送だけが失敗扱いになる。"""

    def dispatch(self, value_list: ValueList) -> None:
        ...


class DispatcherFunc:
    """ただの callable を :class:`Dispatcher` として使えるようにする。"""

    def __init__(self, func: Callable[[ValueList], None]) -> None:
        self._func = func

    def dispatch(self, value_list: ValueList) -> None:
        self._func(value_list)
