import io

import pytest

from ext2shell.directory import lookup
from ext2shell.image import Ext2Image
from ext2shell.shell import Ext2Shell, tokenize
from ext2shell.structures import (
    EXT2_SUPER_MAGIC,
    ROOT_INO,
    S_IFDIR,
    S_IFREG,
    DirEntry,
    FileType,
    GroupDesc,
    Inode,
    Superblock,
)

BS = 1024
CONTENT = b"Hello, ext2!\n"


def _build_image(path):
    data = bytearray(64 * BS)
    sb = Superblock(
        inodes_count=32,
        blocks_count=64,
        free_blocks_count=53,
        free_inodes_count=21,
        first_data_block=1,
        log_block_size=0,
        blocks_per_group=63,
        frags_per_group=63,
        inodes_per_group=32,
        magic=EXT2_SUPER_MAGIC,
        raw_volume_name=b"testvol",
    )
    data[1024:2048] = sb.to_bytes()
    gd = GroupDesc(block_bitmap=3, inode_bitmap=4, inode_table=5,
                   free_blocks_count=53, free_inodes_count=21, used_dirs_count=1)
    data[2048:2048 + GroupDesc.SIZE] = gd.to_bytes()
    data[3 * BS:3 * BS + 2] = bytes([0xFF, 0x03])
    data[4 * BS:4 * BS + 2] = bytes([0xFF, 0x07])

    def put_inode(num, inode):
        off = 5 * BS + (num - 1) * Inode.SIZE
        data[off:off + Inode.SIZE] = inode.to_bytes()

    root = Inode(mode=S_IFDIR | 0o755, size=BS, links_count=2, blocks=2)
    root.block[0] = 9
    put_inode(ROOT_INO, root)
    hello = Inode(mode=S_IFREG | 0o644, size=len(CONTENT), links_count=1, blocks=2)
    hello.block[0] = 10
    put_inode(11, hello)

    block = bytearray(BS)
    DirEntry(ROOT_INO, 12, FileType.DIR, ".").write_into(block, 0)
    DirEntry(ROOT_INO, 12, FileType.DIR, "..").write_into(block, 12)
    DirEntry(11, BS - 24, FileType.REG_FILE, "hello.txt").write_into(block, 24)
    data[9 * BS:10 * BS] = block
    data[10 * BS:10 * BS + len(CONTENT)] = CONTENT
    path.write_bytes(bytes(data))
    return path


@pytest.fixture
def image_path(tmp_path):
    return _build_image(tmp_path / "disk.img")


@pytest.fixture
def env(image_path):
    image = Ext2Image(image_path)
    out, err = io.StringIO(), io.StringIO()
    shell = Ext2Shell(image, out, err)
    yield shell, image, out, err
    image.close()


def _names(image, inode_num):
    from ext2shell.directory import iter_entries
    return [e.name for e in iter_entries(image, inode_num)]


def test_tokenize_quotes_and_escapes():
    assert tokenize('cp "a b" c') == ["cp", "a b", "c"]
    assert tokenize(r"touch a\ b") == ["touch", "a b"]
    assert tokenize("   ") == []
    assert tokenize('  ls   ') == ["ls"]


def test_prompt_at_root(env):
    shell, _, _, _ = env
    assert shell.prompt() == "[/]$> "


def test_info_reports_superblock(env):
    shell, image, out, _ = env
    shell.process_command("info")
    text = out.getvalue()
    assert "Volume name.....: testvol" in text
    assert f"Free inodes.....: {image.superblock.free_inodes_count}" in text
    assert f"Block size......: {BS} bytes" in text


def test_ls_lists_entries(env):
    shell, _, out, _ = env
    shell.process_command("ls")
    lines = out.getvalue().splitlines()
    assert "hello.txt" in lines
    assert "." in lines and ".." in lines
    assert "inode: 11" in lines


def test_cat_prints_content(env):
    shell, _, out, err = env
    shell.process_command("cat hello.txt")
    assert out.getvalue() == CONTENT.decode() + "\n"
    assert err.getvalue() == ""


def test_cat_missing(env):
    shell, _, _, err = env
    shell.process_command("cat nope")
    assert err.getvalue().strip() == "Error: File 'nope' not found."


def test_touch_creates_file(env):
    shell, image, out, _ = env
    before = image.superblock.free_inodes_count
    shell.process_command("touch new.txt")
    num = lookup(image, ROOT_INO, "new.txt")
    assert num is not None
    assert image.read_inode(num).is_regular()
    assert image.superblock.free_inodes_count == before - 1
    assert "File 'new.txt' created successfully." in out.getvalue()


def test_touch_duplicate(env):
    shell, _, _, err = env
    shell.process_command("touch hello.txt")
    assert "Error: File 'hello.txt' already exists." in err.getvalue()


def test_touch_name_too_long(env):
    shell, image, _, err = env
    shell.process_command("touch " + "x" * 255)
    assert "Name too long" in err.getvalue()
    assert lookup(image, ROOT_INO, "x" * 255) is None


def test_mkdir_cd_and_back(env):
    shell, image, _, _ = env
    links = image.read_inode(ROOT_INO).links_count
    shell.process_command("mkdir docs")
    assert image.read_inode(ROOT_INO).links_count == links + 1
    shell.process_command("cd docs")
    assert shell.prompt() == "[/docs]$> "
    assert sorted(_names(image, shell.current_inode_num)) == [".", ".."]
    shell.process_command("cd ..")
    assert shell.prompt() == "[/]$> "
    assert shell.current_inode_num == ROOT_INO


def test_cd_into_file(env):
    shell, _, _, err = env
    shell.process_command("cd hello.txt")
    assert "Error: 'hello.txt' is not a directory." in err.getvalue()
    assert shell.path == []


def test_rmdir_restores_counts(env):
    shell, image, _, _ = env
    links = image.read_inode(ROOT_INO).links_count
    free_blocks = image.superblock.free_blocks_count
    free_inodes = image.superblock.free_inodes_count
    shell.process_command("mkdir docs")
    shell.process_command("rmdir docs")
    assert lookup(image, ROOT_INO, "docs") is None
    assert image.read_inode(ROOT_INO).links_count == links
    assert image.superblock.free_blocks_count == free_blocks
    assert image.superblock.free_inodes_count == free_inodes


def test_rmdir_not_empty(env):
    shell, image, _, err = env
    shell.process_command("mkdir docs")
    shell.process_command("cd docs")
    shell.process_command("touch inner")
    shell.process_command("cd ..")
    shell.process_command("rmdir docs")
    assert "Error: Directory 'docs' is not empty." in err.getvalue()
    assert lookup(image, ROOT_INO, "docs") is not None


def test_rm_file_frees_resources(env):
    shell, image, out, _ = env
    free_blocks = image.superblock.free_blocks_count
    free_inodes = image.superblock.free_inodes_count
    shell.process_command("rm hello.txt")
    assert lookup(image, ROOT_INO, "hello.txt") is None
    assert image.superblock.free_blocks_count == free_blocks + 1
    assert image.superblock.free_inodes_count == free_inodes + 1
    assert "File 'hello.txt' removed successfully." in out.getvalue()


def test_rm_directory_refused(env):
    shell, image, _, err = env
    shell.process_command("mkdir docs")
    shell.process_command("rm docs")
    assert "'rmdir' should be used instead" in err.getvalue()
    assert lookup(image, ROOT_INO, "docs") is not None


def test_cp_to_host(env, tmp_path):
    shell, _, _, _ = env
    dest = tmp_path / "copy.txt"
    shell.cp("hello.txt", str(dest))
    assert dest.read_bytes() == CONTENT


def test_rename_keeps_inode(env):
    shell, image, out, _ = env
    num = lookup(image, ROOT_INO, "hello.txt")
    links = image.read_inode(num).links_count
    shell.process_command("rename hello.txt greeting.txt")
    assert lookup(image, ROOT_INO, "hello.txt") is None
    assert lookup(image, ROOT_INO, "greeting.txt") == num
    assert image.read_inode(num).links_count == links
    shell.process_command("cat greeting.txt")
    assert CONTENT.decode() in out.getvalue()


def test_unknown_command(env):
    shell, _, _, err = env
    shell.process_command("frobnicate")
    shell.process_command("cd")
    assert err.getvalue().splitlines() == [
        "Error: Unknown command or incorrect arguments.",
        "Error: Unknown command or incorrect arguments.",
    ]


def test_run_stops_at_exit(env):
    shell, _, out, _ = env
    shell.run(["pwd\n", "exit\n", "ls\n"])
    text = out.getvalue()
    assert text.startswith("nEXT2 Shell initialized. Type 'exit' to quit.")
    assert text.rstrip().endswith("Exiting shell.")
    assert "hello.txt" not in text


def test_changes_persist(image_path):
    with Ext2Image(image_path) as image:
        Ext2Shell(image, io.StringIO(), io.StringIO()).touch("kept")
    with Ext2Image(image_path) as image:
        num = lookup(image, ROOT_INO, "kept")
        assert num is not None
        assert image.read_inode(num).links_count == 1