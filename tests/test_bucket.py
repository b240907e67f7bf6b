import io

import pytest

from objstore.bucket import (
    Bucket,
    IterObjectAttributes,
    IterOptionType,
    IterParams,
    ObjectSizerReader,
    ObjProvider,
    OptionNotSupportedError,
    apply_iter_options,
    apply_object_upload_options,
    nop_closer_with_size,
    try_to_get_size,
    validate_iter_options,
    with_content_type,
    with_recursive_iter,
    with_updated_at,
)


class _TrackingReader(io.BytesIO):
    def __init__(self, data):
        super().__init__(data)
        self.close_calls = 0

    def close(self):
        self.close_calls += 1
        super().close()


def test_apply_iter_options_sets_flags():
    assert apply_iter_options([]) == IterParams()
    params = apply_iter_options([with_recursive_iter(), with_updated_at()])
    assert params == IterParams(recursive=True, last_modified=True)


def test_validate_iter_options_accepts_supported():
    validate_iter_options(
        [IterOptionType.RECURSIVE, IterOptionType.UPDATED_AT],
        [with_recursive_iter(), with_updated_at()],
    )
    assert with_updated_at().type is IterOptionType.UPDATED_AT


def test_validate_iter_options_rejects_unsupported():
    with pytest.raises(OptionNotSupportedError) as info:
        validate_iter_options([IterOptionType.RECURSIVE], [with_recursive_iter(), with_updated_at()])
    assert "iter option is not supported" in str(info.value)


def test_upload_options():
    assert apply_object_upload_options([]).content_type == ""
    params = apply_object_upload_options([with_content_type("text/plain")])
    assert params.content_type == "text/plain"


def test_iter_object_attributes_default_has_no_timestamp():
    assert IterObjectAttributes(name="a").last_modified is None


def test_provider_string_value():
    assert str(ObjProvider.FILESYSTEM) == "FILESYSTEM"
    assert ObjProvider("S3") is ObjProvider.S3


def test_size_of_bytes_stream_is_unread_length():
    reader = io.BytesIO(b"hello world")
    assert try_to_get_size(reader) == 11
    assert reader.read(4) == b"hell"
    assert try_to_get_size(reader) == 7


def test_size_of_file_is_total_size(tmp_path):
    path = tmp_path / "test"
    path.write_bytes(b"test")
    with open(path, "rb") as handle:
        handle.read(2)
        assert try_to_get_size(handle) == 4


def test_size_of_unsupported_reader():
    with pytest.raises(TypeError):
        try_to_get_size(object())


def test_object_sizer_reader_reports_size_and_reads():
    data = b"payload"
    reader = ObjectSizerReader(io.BytesIO(data), lambda: len(data))
    assert try_to_get_size(reader) == len(data)
    assert reader.read() == data


def test_object_sizer_reader_unknown_size():
    reader = ObjectSizerReader(io.BytesIO(b"x"))
    with pytest.raises(ValueError) as info:
        reader.object_size()
    assert str(info.value) == "unknown size"


def test_object_sizer_reader_closes_wrapped():
    inner = _TrackingReader(b"abc")
    with ObjectSizerReader(inner) as reader:
        assert reader.read(2) == b"ab"
    assert inner.close_calls == 1


def test_nop_closer_with_size_does_not_close():
    inner = _TrackingReader(b"abcdef")
    wrapped = nop_closer_with_size(inner)
    assert wrapped.object_size() == 6
    wrapped.close()
    assert inner.close_calls == 0
    assert wrapped.read() == b"abcdef"


def test_bucket_is_abstract():
    with pytest.raises(TypeError):
        Bucket()