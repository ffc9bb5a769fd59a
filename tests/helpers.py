"""Builders for server table files used across the test suite."""

import codecs


def skill_rows_xml(count, start=1):
    """Row elements of a skill table; every row has a fragment and the fields the server filter touches."""
    rows = []
    for i in range(start, start + count):
        rows.append(
            f'  <skill id="{i}" type="active">\n'
            f'    <name>Skill {i}</name>\n'
            f'    <level>{i % 10 + 1}</level>\n'
            f'    <cooldown>{i * 0.5}</cooldown>\n'
            f'    <target_flying_restriction>{i % 2}</target_flying_restriction>\n'
            f'    <__order_index>{i}</__order_index>\n'
            f'    <effects>\n'
            f'      <effect kind="damage">{i * 10}</effect>\n'
            f'      <effect kind="stun">1</effect>\n'
            f'    </effects>\n'
            f'  </skill>\n'
        )
    return "".join(rows)


def table_document(root_tag, body, root_attributes="", declared="UTF-16"):
    attributes = f" {root_attributes}" if root_attributes else ""
    return f'<?xml version="1.0" encoding="{declared}"?>\n<{root_tag}{attributes}>\n{body}</{root_tag}>\n'


def encode_utf16le_bom(text):
    return codecs.BOM_UTF16_LE + text.encode("utf-16-le")


def npc_document(region, ids):
    body = "".join(
        f'  <npc id="{i}">\n    <name>Npc {i}</name>\n    <hp>{i * 100}</hp>\n  </npc>\n' for i in ids
    )
    return table_document("npcs", body, f'region="{region}"', declared="UTF-8").encode("utf-8")
