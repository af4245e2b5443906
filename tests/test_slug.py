"""Tests for managed file names derived from paper titles."""

from folio.slug import UNTITLED, main_file_name, slug_from_title, sup_file_name


class TestSlugFromTitle:
    def test_stopwords_filtered(self):
        assert slug_from_title("The Zebrafish Photonic Lattice") == "zebrafish-photonic-lattice"

    def test_word_limit(self):
        title = "Zebrafish Photonic Lattice Topology Superconductors"
        assert slug_from_title(title) == "zebrafish-photonic-lattice-topology"
        assert slug_from_title(title, max_words=2) == "zebrafish-photonic"

    def test_unicode_normalized(self):
        assert slug_from_title("Métallo-Organic Réseau") == "metallo-organic-reseau"

    def test_all_stopwords_kept(self):
        assert slug_from_title("The Of") == "the-of"

    def test_empty_title(self):
        assert slug_from_title("") == UNTITLED
        assert slug_from_title("!!! ???") == UNTITLED

    def test_length_capped(self):
        slug = slug_from_title("Pneumonoultramicroscopicsilicovolcanoconiosis Hippopotomonstrosesquippedaliophobia")
        assert len(slug) <= 48
        assert not slug.endswith("-")


class TestFileNames:
    def test_main_file_name(self):
        assert main_file_name("Zebrafish Topology", "0123456789ab", "/in/x.PDF") == "zebrafish-topology_01234567.pdf"

    def test_main_defaults_to_pdf(self):
        assert main_file_name("Zebrafish", "0123456789ab") == "zebrafish_01234567.pdf"

    def test_sup_file_name_keeps_extension(self):
        assert sup_file_name("Zebrafish", "0123456789ab", 2, "data.tar.gz") == "zebrafish_01234567_sup2.gz"

    def test_sup_without_extension(self):
        assert sup_file_name("Zebrafish", "0123456789ab", 1, "README") == "zebrafish_01234567_sup1"
