import re

from bill_numbering import BillNumberAllocator


class TestBillNumberAllocator:

    def test_format_prefix_millis_and_suffix(self):
        allocator = BillNumberAllocator(clock=lambda: 1745877514.5, entropy=lambda n: 42)
        assert allocator.allocate("WIT") == "WIT17458775145000042"

    def test_default_prefix(self):
        bill_no = BillNumberAllocator().allocate()
        assert re.fullmatch(r"BILL\d{13}\d{4}", bill_no)

    def test_suffix_varies_within_same_millisecond(self):
        suffixes = iter([1, 2])
        allocator = BillNumberAllocator(clock=lambda: 1700000000.0, entropy=lambda n: next(suffixes))
        assert allocator.allocate() != allocator.allocate()
