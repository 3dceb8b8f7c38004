# 远程负载提取工具 - 带边界检查的二进制读取

import struct

from .errors import BufferOverrunError

U16 = struct.Struct("<H")
U32 = struct.Struct("<I")
U64 = struct.Struct("<Q")


class BinaryCursor:
    """小端序读取游标

    记录当前位置与剩余长度，任何越界读取都抛出 BufferOverrunError，
    调用方无需在每个字段处重复检查。
    """

    def __init__(self, data, offset=0, label="数据"):
        self._data = bytes(data)
        self._pos = 0
        self.label = label
        self.seek(offset)

    def __len__(self):
        return len(self._data)

    @property
    def position(self):
        return self._pos

    @property
    def remaining(self):
        return len(self._data) - self._pos

    def seek(self, pos):
        if pos < 0 or pos > len(self._data):
            raise BufferOverrunError(f"{self.label}: 偏移 {pos} 超出范围 (长度 {len(self._data)})")
        self._pos = pos

    def skip(self, size):
        self.read_bytes(size)

    def read_bytes(self, size):
        if size < 0 or size > self.remaining:
            raise BufferOverrunError(
                f"{self.label}: 在偏移 {self._pos} 处需要 {size} 字节, 仅剩 {self.remaining} 字节"
            )
        start = self._pos
        self._pos += size
        return self._data[start:self._pos]

    def peek(self, size):
        start = self._pos
        data = self.read_bytes(size)
        self._pos = start
        return data

    def unpack(self, layout):
        """按 struct 布局读取，layout 可以是格式串或 struct.Struct"""
        if not isinstance(layout, struct.Struct):
            layout = struct.Struct(layout)
        return layout.unpack(self.read_bytes(layout.size))

    def u16(self):
        return self.unpack(U16)[0]

    def u32(self):
        return self.unpack(U32)[0]

    def u64(self):
        return self.unpack(U64)[0]
